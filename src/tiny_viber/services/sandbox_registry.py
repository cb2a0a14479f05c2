import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from tiny_viber.domain.contracts import SandboxHandle
from tiny_viber.observability.structured_log import log_json
from tiny_viber.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class ActiveSandbox:
    request_id: str
    handle: Optional[SandboxHandle]
    token: CancellationToken
    started_at: datetime


@dataclass(frozen=True)
class KillReport:
    killed: List[str]
    was_active: int


class SandboxRegistry:
    """Sandboxes owned by in-flight pipelines, for the operator kill switch."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveSandbox] = {}

    def register(self, request_id: str, token: CancellationToken) -> None:
        with self._lock:
            self._active[request_id] = ActiveSandbox(
                request_id=request_id,
                handle=None,
                token=token,
                started_at=datetime.now(timezone.utc),
            )

    def attach(self, request_id: str, handle: SandboxHandle) -> None:
        with self._lock:
            entry = self._active.get(request_id)
            if entry is not None:
                entry.handle = handle

    def unregister(self, request_id: str) -> None:
        with self._lock:
            self._active.pop(request_id, None)

    def active_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active.keys())

    async def kill(self, request_id: str) -> bool:
        with self._lock:
            entry = self._active.get(request_id)
        if entry is None:
            return False
        return await self._kill_entry(entry)

    async def kill_all(self) -> KillReport:
        """Cancel every pipeline and kill its sandbox. Never raises."""
        with self._lock:
            entries = list(self._active.values())
        killed: List[str] = []
        for entry in entries:
            if await self._kill_entry(entry):
                killed.append(entry.request_id)
        return KillReport(killed=killed, was_active=len(entries))

    async def _kill_entry(self, entry: ActiveSandbox) -> bool:
        entry.token.cancel("Killed by operator.")
        if entry.handle is None:
            # Not provisioned yet; the token stops it before it starts.
            return True
        try:
            await entry.handle.kill()
        except Exception as exc:
            log_json(
                logger,
                "sandbox.kill_failed",
                level="warning",
                request_id=entry.request_id,
                sandbox_id=entry.handle.sandbox_id,
                error=str(exc),
            )
            return False
        return True
