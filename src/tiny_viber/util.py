import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-ant-[A-Za-z0-9_-]{10,}", "sk-ant-REDACTED"),
    (r"sk-(?!ant-)[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"github_pat_[A-Za-z0-9_]{20,}", "github_pat_REDACTED"),
    (r"x-access-token:[^@\s]+@", "x-access-token:REDACTED@"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"

# Characters that keep their special meaning inside a double-quoted shell word.
_SHELL_DOUBLE_QUOTE_SPECIALS = ("\\", '"', "$", "`")


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


def redact_secrets(text: str, secrets: Iterable[str]) -> str:
    """Redact known secret values verbatim, then apply the pattern set."""
    value = text or ""
    for secret in secrets:
        if secret:
            value = value.replace(secret, DEFAULT_REPLACEMENT)
    return redact(value)


def escape_shell_double_quoted(text: str) -> str:
    """Escape text for interpolation between double quotes in a shell command."""
    value = text or ""
    # Backslash first so the escapes added below are not doubled.
    for char in _SHELL_DOUBLE_QUOTE_SPECIALS:
        value = value.replace(char, "\\" + char)
    return value


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items


def truncate(text: str, max_len: int) -> str:
    if max_len <= 0 or len(text or "") <= max_len:
        return text or ""
    return (text or "")[:max_len]
