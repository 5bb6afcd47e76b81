"""Cooperative cancellation for in-flight turns."""

import logging

from marginalia.exceptions import InferenceRunningError, TurnCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Checked by the orchestrator before it acts on each event."""

    def __init__(self, turn_id: str):
        self.turn_id = turn_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled()


class CancellationController:
    """Owns one token per in-flight turn.

    At most one turn may be in flight: :meth:`start` rejects a second
    turn instead of queueing it.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._tokens)

    def start(self, turn_id: str) -> CancellationToken:
        if self._tokens:
            raise InferenceRunningError()
        token = CancellationToken(turn_id)
        self._tokens[turn_id] = token
        return token

    def cancel(self, turn_id: str) -> bool:
        """Cancel ``turn_id``'s token. Returns False if it was not in flight."""
        token = self._tokens.pop(turn_id, None)
        if token is None:
            return False
        logger.info(f"Cancelling turn {turn_id}")
        token.cancel()
        return True

    def cancel_all(self) -> list[str]:
        turn_ids = list(self._tokens)
        for turn_id in turn_ids:
            self.cancel(turn_id)
        return turn_ids

    def release(self, turn_id: str) -> None:
        self._tokens.pop(turn_id, None)
