import re
import time
from typing import Optional

from tiny_viber.domain.config_models import AICoderConfig

MAX_SLUG_LENGTH = 40

_DISALLOWED_RE = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


def slugify(summary: str) -> str:
    slug = _DISALLOWED_RE.sub("", (summary or "").lower())
    slug = _WHITESPACE_RE.sub("-", slug.strip())
    return slug[:MAX_SLUG_LENGTH]


def generate_branch_name(summary: str, config: AICoderConfig, now: Optional[float] = None) -> str:
    """``{prefix}{slug}-{epoch seconds}``.

    Uniqueness rests on the one-second timestamp only: two requests with the
    same summary in the same second collide, and the push of the second fails.
    """
    epoch = int(time.time() if now is None else now)
    return f"{config.git.branch_prefix}{slugify(summary)}-{epoch}"
