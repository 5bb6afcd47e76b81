"""Interactive feedback on a markdown note.

Demonstrates:
- Defining local tools with @tool
- Building a ConversationManager with TurnSettings
- Streaming events from iter_round and printing deltas
- Asking for feedback on the changes made to a note since the last round

Usage:
    Add ANTHROPIC_API_KEY=... (or OPENAI_API_KEY=...) to .env, then:
    uv run --env-file=.env examples/notes_critic.py notes/draft.md
    uv run --env-file=.env examples/notes_critic.py notes/draft.md --model openai/gpt-4.1 --trace

Type a message to chat about the note, ``/diff`` to ask for feedback on
the edits made since the previous feedback, ``/rerun`` to regenerate the
last reply, ``/title`` to name the conversation.
"""

import argparse
import asyncio
import logging
from pathlib import Path

from marginalia.conversation import ConversationManager
from marginalia.events import (
    ContentEvent,
    ErrorEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolCallResultEvent,
)
from marginalia.feedback import file_change_input
from marginalia.settings import TurnSettings
from marginalia.tools import ToolDispatcher, tool
from marginalia.turn import LLMFile

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=[
        logging.FileHandler('marginalia.log'),
    ]
)

VAULT = Path(".")


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from marginalia.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def view_note(path: str, start_line: int = 1, end_line: int = -1):
    """Read a note from the vault.

    Args:
        path: Note path relative to the vault root.
        start_line: First line to return, 1-based.
        end_line: Last line to return; -1 reads to the end.
    """
    lines = (VAULT / path).read_text().splitlines()
    end = len(lines) if end_line == -1 else end_line
    return "\n".join(lines[start_line - 1:end])


@tool
def list_notes(folder: str = ""):
    """List markdown notes under a folder of the vault.

    Args:
        folder: Folder relative to the vault root.
    """
    return sorted(str(p.relative_to(VAULT)) for p in (VAULT / folder).rglob("*.md"))


def note_file(path: Path) -> LLMFile:
    return LLMFile(type="text", path=str(path), content=path.read_text())


async def print_events(events):
    async for event in events:
        if isinstance(event, ThinkingEvent):
            print(f"\033[2m{event.content}\033[0m", end="", flush=True)
        elif isinstance(event, ContentEvent):
            print(event.content, end="", flush=True)
        elif isinstance(event, ToolCallEvent) and event.is_complete:
            print(f"\n[{event.tool_call.name}({event.tool_call.input})]")
        elif isinstance(event, ToolCallResultEvent) and event.is_error:
            print(f"\n[tool failed: {event.result}]")
        elif isinstance(event, ErrorEvent):
            print(f"\n[{event.error}]")
    print("\n")


async def main():
    parser = argparse.ArgumentParser(description="Notes critic")
    parser.add_argument("note", type=Path)
    parser.add_argument("--model", default="anthropic/claude-sonnet-4-20250514")
    parser.add_argument("--max-steps", type=int, default=5)
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("notes-critic")

    settings = TurnSettings(
        model=args.model,
        max_steps=args.max_steps,
        enabled_tools=("view_note", "list_notes", "web_search"),
        idle_timeout=120,
    )
    manager = ConversationManager(
        dispatcher=ToolDispatcher([view_note, list_notes]),
        settings=settings,
    )
    baseline = args.note.read_text()

    print(f"Notes critic for {args.note}\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if user_input == "/title":
            print(f"Title: {await manager.make_title()}\n")
            continue

        if user_input == "/rerun":
            conversation = manager.get_conversation()
            if not conversation:
                continue
            events = manager.iter_rerun(conversation[-1].id)
        elif user_input == "/diff":
            current = args.note.read_text()
            events = manager.iter_round(
                file_change_input(
                    str(args.note), baseline, current, files=[note_file(args.note)],
                )
            )
            baseline = current
        else:
            events = manager.iter_round(user_input, files=[note_file(args.note)])

        print("Assistant: ", end="")
        await print_events(events)


if __name__ == "__main__":
    asyncio.run(main())
