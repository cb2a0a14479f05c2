"""Non-fatal side effects with a visible outcome.

Status writes, lifetime extensions, auto-merge attempts and preview lookups
must never abort a pipeline. Instead of a bare ``except: pass`` they run
through :func:`best_effort`, which logs the failure and hands back a
:class:`BestEffortOutcome` the caller may inspect or ignore.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BestEffortOutcome(Generic[T]):
    label: str
    ok: bool
    value: Optional[T] = None
    error: str = ""


async def best_effort(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> BestEffortOutcome[Any]:
    """Call ``fn`` (sync or async). Exceptions are logged and captured."""
    try:
        value = fn(*args, **kwargs)
        if inspect.isawaitable(value):
            value = await value
    except Exception as exc:
        log_json(logger, "best_effort.failed", level="warning", label=label, error=f"{type(exc).__name__}: {exc}")
        return BestEffortOutcome(label=label, ok=False, error=str(exc))
    return BestEffortOutcome(label=label, ok=True, value=value)
