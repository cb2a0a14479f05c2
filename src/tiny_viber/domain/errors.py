from typing import List, Optional, Sequence

ERROR_KIND_INPUT = "input"
ERROR_KIND_INFRASTRUCTURE = "infrastructure"
ERROR_KIND_POLICY = "policy"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_CANCELLED = "cancelled"

ERROR_KINDS = {
    ERROR_KIND_INPUT,
    ERROR_KIND_INFRASTRUCTURE,
    ERROR_KIND_POLICY,
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_CANCELLED,
}


class PipelineError(Exception):
    """A pipeline failure with a machine-readable kind.

    ``step`` is the pipeline status that was active when the failure happened.
    """

    def __init__(
        self,
        message: str,
        kind: str = ERROR_KIND_INFRASTRUCTURE,
        step: str = "",
        violations: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind if kind in ERROR_KINDS else ERROR_KIND_INFRASTRUCTURE
        self.step = step
        self.violations: List[str] = list(violations or [])

    @property
    def is_timeout(self) -> bool:
        return self.kind == ERROR_KIND_TIMEOUT


class UnknownSkillError(PipelineError):
    def __init__(self, skill_id: str, available: Sequence[str]) -> None:
        super().__init__(
            f'Unknown skill: "{skill_id}". Available: {", ".join(available)}',
            kind=ERROR_KIND_INPUT,
        )
        self.skill_id = skill_id
        self.available = list(available)


class DiffValidationError(PipelineError):
    def __init__(self, violations: Sequence[str], step: str = "") -> None:
        super().__init__(
            "Diff validation failed:\n" + "\n".join(violations),
            kind=ERROR_KIND_POLICY,
            step=step,
            violations=violations,
        )


class SandboxError(PipelineError):
    pass
