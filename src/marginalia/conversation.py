import asyncio
import logging
from collections.abc import AsyncIterator

import httpx

from marginalia.cancellation import CancellationController, CancellationToken
from marginalia.events import (
    ContentEvent,
    ConversationEvent,
    ErrorEvent,
    StepCompleteEvent,
    StepStartEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolCallResultEvent,
    TurnCompleteEvent,
    TurnStartEvent,
)
from marginalia.exceptions import (
    InferenceRunningError,
    StreamError,
    ToolError,
    TurnCancelled,
)
from marginalia.instrumentation import (
    TURN_CANCELLED,
    TURN_COMPLETE,
    TURN_ERROR,
    completion_span,
    record_error,
    record_step,
    record_turn,
    tool_span,
    turn_span,
)
from marginalia.providers import BackendProvider, get_provider
from marginalia.settings import TurnSettings
from marginalia.streaming import ChunkType, StreamChunk, ToolCallResult
from marginalia.tools import ToolDispatcher
from marginalia.turn import (
    ChatMessage,
    ConversationTurn,
    FileChange,
    LLMFile,
    ManualFeedback,
    ToolCall,
    TurnStep,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Inference was cancelled"

UserInputLike = str | ChatMessage | FileChange | ManualFeedback


class ConversationManager:
    """Owns a conversation and drives its turns.

    Each turn runs one step of model inference at a time. After a step
    finishes, another step starts if the model asked for at least one
    locally executed tool and the turn's step budget is not spent. The
    turn history, including the tool results just filled in, is the
    input for the next step.

    Only one turn is in flight at a time; starting another is rejected
    with :class:`~marginalia.exceptions.InferenceRunningError`. Errors
    that happen while a turn streams never propagate: they are recorded
    on the turn and reported as an :class:`~marginalia.events.ErrorEvent`.

    ``iter_round()`` is the streaming entry point; ``new_round()`` drains
    it.

    Args:
        provider: Backend to use for every turn. When omitted, one is
            built per turn from ``settings.model``.
        dispatcher: Local tools the model may call.
        settings: Default per-turn settings.
        client: Shared HTTP client for backend requests.
    """

    def __init__(
        self,
        provider: BackendProvider | None = None,
        dispatcher: ToolDispatcher | None = None,
        settings: TurnSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.provider = provider
        self.dispatcher = dispatcher or ToolDispatcher()
        self.settings = settings or TurnSettings()
        self.client = client
        self._conversation: list[ConversationTurn] = []
        self._controller = CancellationController()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_conversation(self) -> list[ConversationTurn]:
        """Snapshots of every turn; mutating them changes nothing."""
        return [turn.snapshot() for turn in self._conversation]

    def is_inference_running(self) -> bool:
        return self._controller.is_running

    def load(self, turns: list[ConversationTurn]) -> None:
        """Replace the conversation, e.g. with turns restored from history."""
        if self.is_inference_running():
            raise InferenceRunningError()
        self._conversation = [turn.snapshot() for turn in turns]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_turn(self, turn_id: str) -> None:
        """Stop acting on ``turn_id``'s stream.

        The active step is discarded if it produced nothing, and the turn
        too if that leaves it empty.
        """
        self._controller.cancel(turn_id)
        turn = self._find(turn_id)
        if turn is not None:
            self._finish_cancelled(turn)

    def cancel_inference(self) -> None:
        for turn_id in self._controller.cancel_all():
            turn = self._find(turn_id)
            if turn is not None:
                self._finish_cancelled(turn)

    def clear(self) -> None:
        self.cancel_inference()
        self._conversation = []

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def new_round(
        self,
        prompt: UserInputLike,
        files: list[LLMFile] | None = None,
        settings: TurnSettings | None = None,
    ) -> ConversationTurn:
        """Run a turn to completion and return its final snapshot."""
        turn, token = self._begin_turn(prompt, files)
        async for _ in self._run_turn(turn, token, settings or self.settings):
            pass
        return turn.snapshot()

    async def iter_round(
        self,
        prompt: UserInputLike,
        files: list[LLMFile] | None = None,
        settings: TurnSettings | None = None,
    ) -> AsyncIterator[ConversationEvent]:
        """Start a turn, yielding events as it streams."""
        turn, token = self._begin_turn(prompt, files)
        async for event in self._run_turn(turn, token, settings or self.settings):
            yield event

    async def rerun_turn(
        self,
        turn_id: str,
        prompt: str | None = None,
        files: list[LLMFile] | None = None,
        settings: TurnSettings | None = None,
        cancel_running: bool = False,
    ) -> ConversationTurn:
        user_input = self._prepare_rerun(turn_id, prompt, files, cancel_running)
        return await self.new_round(user_input, settings=settings)

    async def iter_rerun(
        self,
        turn_id: str,
        prompt: str | None = None,
        files: list[LLMFile] | None = None,
        settings: TurnSettings | None = None,
        cancel_running: bool = False,
    ) -> AsyncIterator[ConversationEvent]:
        """Replace ``turn_id`` and every later turn with a fresh turn.

        Rejected while another turn is in flight unless
        ``cancel_running`` is set, in which case that turn is cancelled
        first. ``prompt`` and ``files`` default to the original turn's.
        """
        user_input = self._prepare_rerun(turn_id, prompt, files, cancel_running)
        async for event in self.iter_round(user_input, settings=settings):
            yield event

    async def make_title(self, settings: TurnSettings | None = None) -> str:
        settings = settings or self.settings
        provider = self.provider or get_provider(settings.model)
        return await provider.make_title(self.get_conversation(), client=self.client)

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def _begin_turn(
        self, prompt: UserInputLike, files: list[LLMFile] | None,
    ) -> tuple[ConversationTurn, CancellationToken]:
        if isinstance(prompt, str):
            user_input = ChatMessage(message=prompt, prompt=prompt, files=files)
        elif files is not None:
            user_input = prompt.model_copy(update={"files": files})
        else:
            user_input = prompt

        turn = ConversationTurn(user_input=user_input)
        token = self._controller.start(turn.id)
        self._conversation.append(turn)
        return turn, token

    def _prepare_rerun(
        self,
        turn_id: str,
        prompt: str | None,
        files: list[LLMFile] | None,
        cancel_running: bool,
    ) -> UserInputLike:
        index = next(
            (i for i, t in enumerate(self._conversation) if t.id == turn_id), -1,
        )
        if index == -1:
            raise KeyError(f"Turn with ID {turn_id} not found in conversation history")
        if self.is_inference_running() and not cancel_running:
            raise InferenceRunningError()

        original = self._conversation[index].user_input
        earlier = self._conversation[:index]
        if self.is_inference_running():
            # may drop the in-flight turn, which can be the one rerun
            self.cancel_inference()
        self._conversation = earlier
        if prompt is not None:
            return ChatMessage(
                message=prompt, prompt=prompt,
                files=files if files is not None else original.files,
            )
        if files is not None:
            return original.model_copy(update={"files": files})
        return original

    async def _run_turn(
        self,
        turn: ConversationTurn,
        token: CancellationToken,
        settings: TurnSettings,
    ) -> AsyncIterator[ConversationEvent]:
        logger.info(f"Starting turn {turn.id} with {settings.model}")
        yield TurnStartEvent(turn_id=turn.id, turn=turn.snapshot())
        async with turn_span(turn.id, settings.model) as span:
            try:
                if self.provider is not None:
                    provider = self.provider.with_limits(
                        settings.max_tokens, settings.thinking_budget_tokens,
                    )
                else:
                    provider = get_provider(
                        settings.model,
                        max_tokens=settings.max_tokens,
                        thinking_budget_tokens=settings.thinking_budget_tokens,
                    )
                while True:
                    token.raise_if_cancelled()
                    step = TurnStep()
                    turn.steps.append(step)
                    step_index = len(turn.steps) - 1
                    yield StepStartEvent(turn_id=turn.id, step_index=step_index)

                    async with completion_span(
                        provider.name, provider.model, step_index,
                    ) as step_span:
                        async for event in self._stream_step(
                            turn, step, provider, token, settings,
                        ):
                            yield event
                        record_step(step_span, step)

                    yield StepCompleteEvent(turn_id=turn.id, step=step.model_copy(deep=True))
                    if step.local_tool_calls() and len(turn.steps) < settings.max_steps:
                        continue
                    if step.local_tool_calls():
                        logger.warning(
                            f"Turn {turn.id} reached its limit of "
                            f"{settings.max_steps} steps"
                        )
                    break

                turn.is_complete = True
                logger.info(f"Turn {turn.id} complete after {len(turn.steps)} steps")
                record_turn(span, turn, TURN_COMPLETE)
                yield TurnCompleteEvent(turn_id=turn.id, turn=turn.snapshot())
            except TurnCancelled:
                self._finish_cancelled(turn)
                record_turn(span, turn, TURN_CANCELLED)
                record_error(span, CANCELLED_MESSAGE)
                kept = self._find(turn.id) is not None
                yield ErrorEvent(
                    turn_id=turn.id, error=turn.error or CANCELLED_MESSAGE,
                    cancelled=True, turn=turn.snapshot() if kept else None,
                )
            except Exception as e:
                logger.warning(f"Turn {turn.id} failed: {e}")
                record_error(span, e)
                if token.cancelled:
                    # cancelled from outside; the turn is already finished
                    self._finish_cancelled(turn)
                    record_turn(span, turn, TURN_CANCELLED)
                    kept = self._find(turn.id) is not None
                    yield ErrorEvent(
                        turn_id=turn.id, error=turn.error or CANCELLED_MESSAGE,
                        cancelled=True, turn=turn.snapshot() if kept else None,
                    )
                else:
                    turn.error = str(e)
                    turn.is_complete = True
                    record_turn(span, turn, TURN_ERROR)
                    yield ErrorEvent(
                        turn_id=turn.id, error=turn.error, turn=turn.snapshot(),
                    )
            finally:
                self._controller.release(turn.id)
                if not turn.is_complete:
                    # consumer stopped iterating mid-turn
                    self._finish_cancelled(turn)

    async def _stream_step(
        self,
        turn: ConversationTurn,
        step: TurnStep,
        provider: BackendProvider,
        token: CancellationToken,
        settings: TurnSettings,
    ) -> AsyncIterator[ConversationEvent]:
        backend = self._with_idle_timeout(
            provider.stream(
                self._conversation_until(turn),
                settings.system_prompt,
                settings.thinking,
                settings.enabled_tools,
                self.dispatcher.definitions(settings.enabled_tools or None),
                client=self.client,
            ),
            settings.idle_timeout,
        )
        chunks = self._with_tool_results(backend, token)
        try:
            async for chunk in chunks:
                token.raise_if_cancelled()
                event = self._apply_chunk(turn, step, chunk)
                if event is not None:
                    yield event
                if chunk.type is ChunkType.DONE:
                    break
        finally:
            await chunks.aclose()

    async def _with_idle_timeout(
        self, chunks: AsyncIterator[StreamChunk], idle_timeout: float | None,
    ) -> AsyncIterator[StreamChunk]:
        """Pass backend chunks through, failing if one is slow to arrive.

        Only waits on the backend are timed; local tool execution happens
        downstream of this generator.
        """
        try:
            while True:
                try:
                    if idle_timeout is None:
                        chunk = await chunks.__anext__()
                    else:
                        chunk = await asyncio.wait_for(chunks.__anext__(), idle_timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    raise StreamError(
                        f"Backend stream timed out after {idle_timeout:g}s"
                    ) from None
                yield chunk
        finally:
            await chunks.aclose()

    async def _with_tool_results(
        self, chunks: AsyncIterator[StreamChunk], token: CancellationToken,
    ) -> AsyncIterator[StreamChunk]:
        """Pass chunks through, running each finished local tool call.

        The result chunk follows its tool call. Tool failures become a
        result payload so the model can see them.
        """
        try:
            async for chunk in chunks:
                yield chunk
                tc = chunk.tool_call
                if (
                    chunk.type is not ChunkType.TOOL_CALL
                    or not chunk.is_complete
                    or tc is None
                    or tc.is_server_call
                ):
                    continue
                if token.cancelled:
                    return
                async with tool_span(tc.name, tc.id) as span:
                    try:
                        result = await self.dispatcher.dispatch(tc.name, tc.input)
                        is_error = False
                    except ToolError as e:
                        record_error(span, e)
                        result = {"error": str(e)}
                        is_error = True
                yield StreamChunk(
                    type=ChunkType.TOOL_CALL_RESULT,
                    index=chunk.index,
                    tool_call_result=ToolCallResult(
                        id=tc.id, result=result, is_error=is_error,
                    ),
                )
        finally:
            await chunks.aclose()

    def _apply_chunk(
        self, turn: ConversationTurn, step: TurnStep, chunk: StreamChunk,
    ) -> ConversationEvent | None:
        if chunk.type is ChunkType.ERROR:
            raise StreamError(chunk.content)
        if chunk.type is ChunkType.DONE or (
            chunk.is_complete and chunk.type is not ChunkType.TOOL_CALL
        ):
            # finished content/thinking blocks repeat text the deltas carried
            return None

        if chunk.type is ChunkType.THINKING:
            step.thinking = (step.thinking or "") + chunk.content
            return ThinkingEvent(turn_id=turn.id, content=chunk.content)
        if chunk.type is ChunkType.CONTENT:
            step.content = (step.content or "") + chunk.content
            return ContentEvent(turn_id=turn.id, content=chunk.content)
        if chunk.type is ChunkType.SIGNATURE:
            step.signature = chunk.content
            return None
        if chunk.type is ChunkType.TOOL_CALL and chunk.tool_call is not None:
            return self._record_tool_call(turn, step, chunk)
        if chunk.type is ChunkType.TOOL_CALL_RESULT and chunk.tool_call_result:
            return self._record_tool_result(turn, step, chunk.tool_call_result)
        return None

    def _record_tool_call(
        self, turn: ConversationTurn, step: TurnStep, chunk: StreamChunk,
    ) -> ToolCallEvent:
        incoming = chunk.tool_call
        existing = step.tool_calls.get(incoming.id)
        if existing is None:
            existing = incoming.model_copy()
            if not chunk.is_complete:
                existing.input = None
            step.tool_calls[existing.id] = existing
        elif chunk.is_complete:
            existing.input = incoming.input
        return ToolCallEvent(
            turn_id=turn.id, tool_call=existing.model_copy(deep=True),
            is_complete=chunk.is_complete,
        )

    def _record_tool_result(
        self, turn: ConversationTurn, step: TurnStep, outcome: ToolCallResult,
    ) -> ToolCallResultEvent:
        target = step.tool_calls.get(outcome.id)
        if target is None:
            target = _latest_of_kind(step, outcome.is_server_call)
            if target is not None:
                logger.debug(
                    f"Attaching result {outcome.id} to latest tool call {target.id}"
                )
        if target is None:
            logger.warning(f"Result {outcome.id} matches no tool call in the step")
        elif target.result is None:
            target.result = outcome.result
        return ToolCallResultEvent(
            turn_id=turn.id,
            tool_call_id=target.id if target is not None else outcome.id,
            result=outcome.result,
            is_error=outcome.is_error,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find(self, turn_id: str) -> ConversationTurn | None:
        return next((t for t in self._conversation if t.id == turn_id), None)

    def _conversation_until(self, turn: ConversationTurn) -> list[ConversationTurn]:
        index = next(
            (i for i, t in enumerate(self._conversation) if t is turn),
            len(self._conversation) - 1,
        )
        return self._conversation[: index + 1]

    def _finish_cancelled(self, turn: ConversationTurn) -> None:
        if turn.is_complete:
            return
        if turn.steps and turn.steps[-1].is_empty():
            turn.steps.pop()
        if not turn.steps:
            self._conversation = [t for t in self._conversation if t is not turn]
        turn.error = CANCELLED_MESSAGE
        turn.is_complete = True


def _latest_of_kind(step: TurnStep, is_server_call: bool) -> ToolCall | None:
    candidates = [
        tc for tc in step.tool_calls.values() if tc.is_server_call == is_server_call
    ]
    if not candidates:
        return None
    pending = [tc for tc in candidates if tc.result is None]
    return (pending or candidates)[-1]
