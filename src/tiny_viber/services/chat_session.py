"""Per-turn setup for the conversational agent.

Before each model turn the caller needs the selected skill, the latest user
message checked against the prompt rules, and the compiled system prompt.
The tool set comes from the tool registry.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from tiny_viber.domain.config_models import AICoderConfig, Skill, get_skill_by_id
from tiny_viber.domain.errors import ERROR_KIND_INPUT, PipelineError, UnknownSkillError
from tiny_viber.services.rules_engine import ScreenContext, build_system_prompt, validate_prompt


@dataclass(frozen=True)
class ChatSession:
    skill: Skill
    system_prompt: str


def _text_parts(parts: Sequence[Any]) -> str:
    return " ".join(
        str(part.get("text") or "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text"
    )


def last_user_text(messages: Sequence[Dict[str, Any]]) -> Optional[str]:
    """Text of the most recent user message, or None when there is none.

    Accepts ``parts`` lists, plain string ``content`` and ``content`` part lists.
    """
    for message in reversed(list(messages)):
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        if isinstance(message.get("parts"), list):
            return _text_parts(message["parts"])
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return _text_parts(content)
        return ""
    return None


def prepare_chat_session(
    config: AICoderConfig,
    messages: Optional[List[Dict[str, Any]]],
    skill_id: str = "",
    screen_context: Optional[ScreenContext] = None,
) -> ChatSession:
    """Resolve the skill, screen the last user message, compile the prompt.

    Raises ``PipelineError`` of kind ``input`` when the request is rejected.
    """
    if messages is None:
        raise PipelineError("Messages array is required.", kind=ERROR_KIND_INPUT)

    resolved_id = skill_id or config.skills[0].id
    try:
        skill = get_skill_by_id(config, resolved_id)
    except UnknownSkillError as exc:
        raise PipelineError(f"Unknown skill: {resolved_id}", kind=ERROR_KIND_INPUT) from exc

    text = last_user_text(messages)
    if text is not None:
        validation = validate_prompt(text, skill, config)
        if not validation.valid:
            raise PipelineError(validation.error or "Invalid prompt.", kind=ERROR_KIND_INPUT)

    return ChatSession(skill=skill, system_prompt=build_system_prompt(skill, config, screen_context))
