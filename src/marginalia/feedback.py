"""User inputs for document feedback requests."""

import difflib
import itertools
from string import Template

from marginalia.turn import FileChange, LLMFile, ManualFeedback

NO_CHANGES = "No changes detected"

DEFAULT_FEEDBACK_PROMPT = """Please provide feedback on the changes made to "${notePath}".

The current note content is attached as a file for context.

Changes made:
${diff}

Please provide constructive feedback focusing on the recent changes."""


def render_feedback_prompt(template: str, note_path: str, diff: str) -> str:
    """Fill ``${notePath}`` and ``${diff}`` in a feedback prompt template.

    Unknown placeholders are left untouched.
    """
    return Template(template).safe_substitute(notePath=note_path, diff=diff)


def generate_diff(baseline: str, current: str, context_lines: int = 3) -> str:
    if baseline == current:
        return NO_CHANGES
    lines = difflib.unified_diff(
        baseline.split("\n"),
        current.split("\n"),
        n=context_lines,
        lineterm="",
    )
    # the first two lines are the ---/+++ file headers
    hunks = list(itertools.islice(lines, 2, None))
    return "\n".join(hunks) if hunks else NO_CHANGES


def calculate_diff_size(baseline: str, current: str) -> int:
    return abs(len(current) - len(baseline))


def file_change_input(
    filename: str,
    baseline: str,
    current: str,
    template: str = DEFAULT_FEEDBACK_PROMPT,
    files: list[LLMFile] | None = None,
) -> FileChange:
    diff = generate_diff(baseline, current)
    return FileChange(
        filename=filename,
        diff=diff,
        prompt=render_feedback_prompt(template, filename, diff),
        files=files,
    )


def manual_feedback_input(
    filename: str,
    content: str,
    prompt: str | None = None,
    files: list[LLMFile] | None = None,
) -> ManualFeedback:
    return ManualFeedback(
        filename=filename,
        content=content,
        prompt=prompt or f'Please provide feedback on "{filename}".',
        files=files,
    )
