import asyncio

from tiny_viber.domain.errors import ERROR_KIND_CANCELLED, PipelineError


class CancellationToken:
    """Cooperative cancellation, checked by the orchestrator between steps.

    Cancelling does not interrupt a command that is already running inside the
    sandbox; the pipeline stops at the next suspension point.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Cancelled by operator.") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self, step: str = "") -> None:
        if self._event.is_set():
            raise PipelineError(self._reason or "Cancelled.", kind=ERROR_KIND_CANCELLED, step=step)
