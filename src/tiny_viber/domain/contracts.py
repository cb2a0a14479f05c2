"""Contracts for the isolated execution environment and progress reporting."""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def output_tail(self, max_chars: int = 2000) -> str:
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        return text[-max_chars:]


class SandboxHandle(Protocol):
    sandbox_id: str

    async def run_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: int = 30_000,
    ) -> CommandResult:
        ...

    async def write_file(self, path: str, content: str) -> None:
        ...

    async def kill(self) -> None:
        ...


class SandboxProvider(Protocol):
    async def create(self, template_id: str, timeout_ms: int) -> SandboxHandle:
        ...

    async def set_timeout(self, handle: SandboxHandle, timeout_ms: int) -> None:
        ...


# (status, fields) -> None; may be sync or async.
ProgressCallback = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]
