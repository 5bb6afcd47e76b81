import pytest

from marginalia.cancellation import CancellationController, CancellationToken
from marginalia.exceptions import InferenceRunningError, TurnCancelled


class TestCancellationToken:
    def test_starts_live(self):
        token = CancellationToken("t1")
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel(self):
        token = CancellationToken("t1")
        token.cancel()
        assert token.cancelled is True
        with pytest.raises(TurnCancelled, match="Inference was cancelled"):
            token.raise_if_cancelled()


class TestCancellationController:
    def test_start_registers_token(self):
        controller = CancellationController()
        token = controller.start("t1")
        assert token.turn_id == "t1"
        assert controller.is_running is True

    def test_second_start_rejected(self):
        controller = CancellationController()
        controller.start("t1")
        with pytest.raises(InferenceRunningError):
            controller.start("t2")

    def test_cancel_trips_token_and_frees_slot(self):
        controller = CancellationController()
        token = controller.start("t1")

        assert controller.cancel("t1") is True
        assert token.cancelled is True
        assert controller.is_running is False
        controller.start("t2")

    def test_cancel_unknown_is_noop(self):
        assert CancellationController().cancel("missing") is False

    def test_cancel_all(self):
        controller = CancellationController()
        token = controller.start("t1")
        assert controller.cancel_all() == ["t1"]
        assert token.cancelled is True
        assert controller.cancel_all() == []

    def test_release_does_not_cancel(self):
        controller = CancellationController()
        token = controller.start("t1")
        controller.release("t1")
        assert token.cancelled is False
        assert controller.is_running is False
