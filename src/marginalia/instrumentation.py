"""Optional OpenTelemetry tracing for conversation turns.

A turn produces one ``turn`` span with a child ``step`` span per model
invocation and an ``execute_tool`` span per local tool call. Outcomes
(step counts, tool call kinds, cancellation) are recorded as span
attributes so a trace reads like the conversation it came from.

Tracing is off until :func:`instrument` is called, and every helper is
a no-op while it is off. ``opentelemetry-api`` is only imported then::

    from marginalia.instrumentation import instrument
    instrument()  # after configuring a TracerProvider
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

from marginalia.turn import ConversationTurn, TurnStep

logger = logging.getLogger(__name__)

_tracer = None

TURN_COMPLETE = "complete"
TURN_ERROR = "error"
TURN_CANCELLED = "cancelled"


def instrument(*, tracer_name: str = "marginalia") -> None:
    """Start emitting spans for every turn.

    Raises:
        ImportError: If ``opentelemetry-api`` is missing
            (``pip install marginalia[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "Tracing needs opentelemetry-api: pip install marginalia[otel]"
        )
    from opentelemetry import trace

    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("Tracing enabled but no TracerProvider is set; spans are dropped")
    else:
        logger.info(f"Tracing turns with tracer {tracer_name}")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, **kwargs):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name, attributes=attributes, **kwargs) as span:
        yield span


def turn_span(turn_id: str, model: str):
    """Span covering a whole turn, from first step to final event."""
    return _span(
        f"turn {turn_id}",
        {
            "marginalia.turn.id": turn_id,
            "gen_ai.request.model": model,
        },
    )


def completion_span(system: str, model: str, step_index: int = 0):
    """Span covering one step: a single backend invocation and its stream."""
    kwargs = {}
    if _tracer is not None:
        from opentelemetry.trace import SpanKind

        kwargs["kind"] = SpanKind.CLIENT
    return _span(
        f"step {step_index} {model}",
        {
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
            "marginalia.step.index": step_index,
        },
        **kwargs,
    )


def tool_span(tool_name: str, call_id: str):
    """Span covering the local execution of one tool call."""
    return _span(
        f"execute_tool {tool_name}",
        {
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    )


def record_step(span, step: TurnStep) -> None:
    """Count the step's tool calls by where they ran."""
    if span is None:
        return
    local = len(step.local_tool_calls())
    span.set_attribute("marginalia.step.tool_calls.local", local)
    span.set_attribute("marginalia.step.tool_calls.server", len(step.tool_calls) - local)


def record_turn(span, turn: ConversationTurn, outcome: str) -> None:
    """Record how a turn ended and how many steps it kept."""
    if span is None:
        return
    span.set_attribute("marginalia.turn.outcome", outcome)
    span.set_attribute("marginalia.turn.steps", len(turn.steps))


def record_error(span, error: BaseException | str) -> None:
    """Mark a span as failed.

    Accepts an exception or a turn's error message; ``error.type`` is the
    exception's qualified name, or ``TurnError`` for a bare message.
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(error))
    if isinstance(error, BaseException):
        span.record_exception(error)
        error_type = type(error).__qualname__
    else:
        error_type = "TurnError"
    span.set_attribute("error.type", error_type)
