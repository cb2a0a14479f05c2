import asyncio
import logging
import os
import shlex
import shutil
import time
import uuid
from typing import List, Optional, Sequence, Tuple

from tiny_viber.domain.contracts import CommandResult
from tiny_viber.domain.errors import SandboxError
from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

# Idle process keeping the container alive between exec calls.
_KEEPALIVE_ARGV = ("sleep", "infinity")


async def _exec(argv: Sequence[str], stdin_text: str = "", timeout_sec: Optional[float] = None) -> CommandResult:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_text.encode()), timeout=timeout_sec)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        return CommandResult(returncode=124, stdout="", stderr="Execution timeout.", timed_out=True)

    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )


class DockerSandboxHandle:
    """One running container. Commands run through ``docker exec``."""

    def __init__(self, docker_bin: str, container_id: str, deadline: float, exec_fn=_exec):
        self.sandbox_id = container_id
        self._docker_bin = docker_bin
        self._deadline = deadline
        self._exec = exec_fn
        self._killed = False

    @property
    def deadline(self) -> float:
        return self._deadline

    def extend(self, timeout_ms: int) -> None:
        self._deadline = time.monotonic() + timeout_ms / 1000.0

    async def run_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: int = 30_000,
    ) -> CommandResult:
        if self._killed:
            raise SandboxError(f"Sandbox {self.sandbox_id} has been killed.")
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            return CommandResult(returncode=124, stdout="", stderr="Sandbox lifetime exceeded.", timed_out=True)
        argv: List[str] = [self._docker_bin, "exec"]
        if cwd:
            argv.extend(["--workdir", cwd])
        argv.extend([self.sandbox_id, "bash", "-lc", command])
        return await self._exec(argv, timeout_sec=min(timeout_ms / 1000.0, remaining))

    async def write_file(self, path: str, content: str) -> None:
        parent = os.path.dirname(path) or "/"
        script = f"mkdir -p {shlex.quote(parent)} && cat > {shlex.quote(path)}"
        argv = [self._docker_bin, "exec", "-i", self.sandbox_id, "sh", "-c", script]
        result = await self._exec(argv, stdin_text=content, timeout_sec=30)
        if not result.ok:
            raise SandboxError(f"Writing {path} failed: {result.output_tail(500)}")

    async def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        result = await self._exec([self._docker_bin, "rm", "-f", self.sandbox_id], timeout_sec=30)
        if not result.ok:
            raise SandboxError(f"Removing sandbox {self.sandbox_id} failed: {result.output_tail(500)}")


class DockerSandboxProvider:
    """Sandbox provider backed by the local Docker daemon.

    ``template_id`` is the image name. The image must provide ``git``,
    ``bash`` and the coding agent CLI, and a user whose home is ``/home/user``.
    """

    def __init__(
        self,
        network_mode: Optional[str] = None,
        docker_bin: Optional[str] = None,
        extra_run_args: Sequence[str] = (),
        exec_fn=_exec,
    ):
        # The agent needs network access to reach its model API and git host.
        self._network_mode = (network_mode or os.environ.get("DOCKER_SANDBOX_NETWORK") or "bridge").strip()
        self._docker_bin = docker_bin
        self._extra_run_args = tuple(extra_run_args)
        self._exec = exec_fn

    def _resolve_docker(self) -> str:
        docker_bin = self._docker_bin or shutil.which("docker")
        if not docker_bin:
            raise SandboxError("docker binary is not available for sandbox backend.")
        return docker_bin

    async def create(self, template_id: str, timeout_ms: int) -> DockerSandboxHandle:
        docker_bin = self._resolve_docker()
        name = f"tiny-viber-{uuid.uuid4().hex[:12]}"
        argv = [
            docker_bin,
            "run",
            "-d",
            "--rm",
            "--name",
            name,
            "--network",
            self._network_mode,
            *self._extra_run_args,
            template_id,
            *_KEEPALIVE_ARGV,
        ]
        result = await self._exec(argv, timeout_sec=120)
        if not result.ok:
            raise SandboxError(f"docker run failed for image {template_id}: {result.output_tail(500)}")
        container_id = (result.stdout or "").strip().splitlines()[-1] if (result.stdout or "").strip() else name
        log_json(logger, "sandbox.container_started", container_id=container_id[:12], image=template_id)
        return DockerSandboxHandle(
            docker_bin=docker_bin,
            container_id=container_id,
            deadline=time.monotonic() + timeout_ms / 1000.0,
            exec_fn=self._exec,
        )

    async def set_timeout(self, handle: DockerSandboxHandle, timeout_ms: int) -> None:
        """Reset the handle's lifetime to ``timeout_ms`` from now."""
        handle.extend(timeout_ms)


def parse_run_args(raw: str) -> Tuple[str, ...]:
    return tuple(shlex.split(raw or ""))
