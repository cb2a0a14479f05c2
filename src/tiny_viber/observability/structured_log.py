import json
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Dict

from tiny_viber.util import redact


def log_json(logger: Logger, event: str, level: str = "info", **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    for key, value in fields.items():
        payload[key] = redact(value) if isinstance(value, str) else value
    emit = getattr(logger, level, logger.info)
    emit(json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
