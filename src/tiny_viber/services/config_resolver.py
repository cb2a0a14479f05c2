"""Effective configuration = static baseline deep-merged with stored overrides.

Resolution happens once per pipeline invocation; the resulting model is an
immutable snapshot, so an operator edit made mid-run only affects the next
request.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from pydantic import ValidationError

from tiny_viber.domain.config_models import AICoderConfig, ConfigOverrides
from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

# Sections an operator may edit at runtime. Everything else (repo identity,
# git/sandbox/deploy policy) comes from the baseline only.
EDITABLE_SECTIONS = ("rules", "skills", "productContext")


class OverrideSource(Protocol):
    def get(self, key: str = "current") -> Optional[Dict[str, Any]]:
        ...


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive merge of plain mappings.

    Nested mappings merge key by key; lists and scalars in ``override`` replace
    the base value. ``None`` in the override means "not set" and keeps the base.
    """
    merged: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_config(baseline: AICoderConfig, overrides: Optional[ConfigOverrides]) -> AICoderConfig:
    if overrides is None:
        return baseline
    base = baseline.model_dump(by_alias=True)
    patch = overrides.model_dump(by_alias=True, exclude_none=True, exclude={"updated_by"})
    # An empty skill list would leave the catalog empty; treat it as unset.
    if not patch.get("skills"):
        patch.pop("skills", None)
    patch = {key: value for key, value in patch.items() if key in EDITABLE_SECTIONS}
    return AICoderConfig.model_validate(deep_merge(base, patch))


class ConfigResolver:
    def __init__(
        self,
        baseline: AICoderConfig,
        override_store: Optional[OverrideSource] = None,
        key: str = "current",
    ) -> None:
        self._baseline = baseline
        self._override_store = override_store
        self._key = key

    @property
    def baseline(self) -> AICoderConfig:
        return self._baseline

    def resolve(self) -> AICoderConfig:
        overrides = self._load_overrides()
        if overrides is None:
            return self._baseline
        try:
            return merge_config(self._baseline, overrides)
        except ValidationError as exc:
            log_json(logger, "config.override_rejected", level="warning", key=self._key, error=str(exc))
            return self._baseline

    def _load_overrides(self) -> Optional[ConfigOverrides]:
        if self._override_store is None:
            return None
        try:
            raw = self._override_store.get(self._key)
        except Exception as exc:
            log_json(logger, "config.override_unavailable", level="warning", key=self._key, error=str(exc))
            return None
        if not raw:
            return None
        try:
            return ConfigOverrides.model_validate(raw)
        except ValidationError as exc:
            log_json(logger, "config.override_rejected", level="warning", key=self._key, error=str(exc))
            return None
