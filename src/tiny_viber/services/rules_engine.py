"""Rules engine for code change requests.

Three layers, all pure functions:

``validate_prompt``
    Pre-flight sanitisation of the user's request before anything runs.

``build_system_prompt`` / ``build_rules_manifest``
    Compile the policy into the instructions handed to the conversational
    agent and to the coding agent inside the sandbox.

``validate_diff``
    Audit of the staged diff after the coding agent finishes and before
    anything is committed.

The prompt heuristics are advisory input sanitisation, not a security
boundary: they are trivially evaded by rephrasing. The diff audit and the
glob matcher are defence in depth on top of whoever is allowed to invoke the
trigger action, which is the actual trust boundary.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Tuple

from tiny_viber.domain.config_models import AICoderConfig, Skill
from tiny_viber.services.product_context import build_product_context_prompt, merge_product_context

MAX_PROMPT_LENGTH = 5000

INJECTION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions|rules|prompts)", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?(previous|prior|above)", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(a|an)\s+", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all|your)\s+(rules|instructions)", re.IGNORECASE),
    re.compile(r"override\s+(your|the|all)\s+(rules|constraints|instructions)", re.IGNORECASE),
    re.compile(r"(reveal|show|print|repeat)\s+(your|the)\s+(system\s*prompt|instructions)", re.IGNORECASE),
    re.compile(r"system\s*prompt", re.IGNORECASE),
    re.compile(r"\bsudo\b", re.IGNORECASE),
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"exec\s*\(", re.IGNORECASE),
]

DEPENDENCY_MANIFESTS = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "requirements.txt",
        "pyproject.toml",
        "poetry.lock",
        "Pipfile",
        "Pipfile.lock",
    }
)

_HEADER_PREFIX = "diff --git "
_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}


@dataclass(frozen=True)
class PromptValidationResult:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class DiffValidationResult:
    valid: bool
    error: Optional[str] = None
    violations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScreenContext:
    """The page the user was looking at when they asked for the change."""

    screen_name: str
    route: str = ""
    description: str = ""


# ---------------------------------------------------------------------------
# Layer 1: prompt validation
# ---------------------------------------------------------------------------


def validate_prompt(prompt: str, skill: Optional[Skill], config: AICoderConfig) -> PromptValidationResult:
    if not prompt or not prompt.strip():
        return PromptValidationResult(valid=False, error="Prompt cannot be empty.")

    if len(prompt) > MAX_PROMPT_LENGTH:
        return PromptValidationResult(
            valid=False,
            error=f"Prompt is too long ({len(prompt)} chars). Maximum is {MAX_PROMPT_LENGTH} characters.",
        )

    # Never tell the caller which heuristic fired.
    for pattern in INJECTION_PATTERNS:
        if pattern.search(prompt):
            return PromptValidationResult(
                valid=False,
                error="Prompt contains disallowed patterns. Please rephrase your request.",
            )

    if skill is None or not getattr(skill, "id", ""):
        return PromptValidationResult(valid=False, error="A valid skill must be selected.")

    return PromptValidationResult(valid=True)


# ---------------------------------------------------------------------------
# Layer 2: prompt compilation
# ---------------------------------------------------------------------------


def effective_allowed_paths(skill: Skill, config: AICoderConfig) -> List[str]:
    """Skill overrides unioned with the global allow-list, first occurrence wins."""
    merged: List[str] = []
    for pattern in list(config.rules.allowed) + list(skill.allowed_paths or []):
        if pattern not in merged:
            merged.append(pattern)
    return merged


def effective_max_files(skill: Skill, config: AICoderConfig) -> int:
    if skill.max_files_per_change is not None:
        return skill.max_files_per_change
    return config.rules.max_files_per_change


def effective_allow_new_files(skill: Skill, config: AICoderConfig) -> bool:
    if skill.allow_new_files is not None:
        return skill.allow_new_files
    return config.rules.allow_new_files


def _allowed(flag: bool) -> str:
    return "ALLOWED" if flag else "NOT ALLOWED"


def _permitted(flag: bool) -> str:
    return "allowed" if flag else "NOT allowed"


def build_system_prompt(
    skill: Skill,
    config: AICoderConfig,
    screen_context: Optional[ScreenContext] = None,
) -> str:
    rules = config.rules
    product_context = merge_product_context(config.product_context)

    sections: List[str] = [
        build_product_context_prompt(product_context),
        "",
        f'You are an AI coding assistant modifying the "{config.project.name}" codebase.',
        f'You are operating under the "{skill.name}" skill.',
        "",
        "## Skill Instructions",
        skill.prompt,
        "",
        "## File Access Rules",
        "You may ONLY modify files matching these patterns:",
        *[f"  - {p}" for p in effective_allowed_paths(skill, config)],
        "",
        "You must NEVER modify files matching these patterns:",
        *[f"  - {p}" for p in rules.blocked],
        "",
        "## Constraints",
        *[f"{i}. {c}" for i, c in enumerate(rules.constraints, start=1)],
        "",
        f"- Maximum files to change per request: {effective_max_files(skill, config)}",
        f"- Creating new files: {_allowed(effective_allow_new_files(skill, config))}",
        f"- Deleting files: {_allowed(rules.allow_delete_files)}",
        f"- Modifying dependencies: {_allowed(rules.allow_dependency_changes)}",
        "",
        "## Behavior",
        "1. First, explain your plan for the change clearly and concisely.",
        "2. Then, call the trigger_code_change tool with a detailed prompt and the specific files involved.",
        "3. After the change is made, summarize what was done and share the PR link.",
        "4. If anything fails or violates the rules, explain the issue to the user.",
        "5. Never attempt to work around the rules or constraints above.",
    ]

    if screen_context is not None and screen_context.screen_name:
        sections.extend(
            [
                "",
                "## Current Screen Context",
                f"The user is currently viewing the **{screen_context.screen_name}** screen "
                f"(route: `{screen_context.route}`).",
                screen_context.description,
                "",
                "When the user refers to 'this page', 'this screen', or 'here', they mean the screen described above.",
                "Focus your changes on the components and files that render this screen.",
            ]
        )

    return "\n".join(sections)


def build_rules_manifest(skill: Skill, config: AICoderConfig) -> str:
    """Rules file written at the workspace root for the coding agent."""
    rules = config.rules
    product_context = merge_product_context(config.product_context)
    allowed = "\n".join(f"- {p}" for p in effective_allowed_paths(skill, config))
    blocked = "\n".join(f"- {p}" for p in rules.blocked)
    constraints = "\n".join(f"- {c}" for c in rules.constraints)
    return (
        f"{build_product_context_prompt(product_context)}\n\n"
        "---\n\n"
        "# AI Coder Rules\n\n"
        "## You MUST follow these rules at all times\n\n"
        "### Allowed Files\n"
        "You may ONLY modify files matching these patterns:\n"
        f"{allowed}\n\n"
        "### Blocked Files\n"
        "You must NEVER modify these files:\n"
        f"{blocked}\n\n"
        "### Constraints\n"
        f"{constraints}\n\n"
        "### Operational Limits\n"
        f"- Maximum files to change: {effective_max_files(skill, config)}\n"
        f"- New file creation: {_permitted(effective_allow_new_files(skill, config))}\n"
        f"- File deletion: {_permitted(rules.allow_delete_files)}\n"
        f"- Dependency changes: {_permitted(rules.allow_dependency_changes)}\n\n"
        f"### Skill: {skill.name}\n"
        f"{skill.prompt}\n"
    )


# ---------------------------------------------------------------------------
# Layer 3: diff validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileChange:
    path: str
    new_file: bool = False
    deleted_file: bool = False


@dataclass
class ParsedDiff:
    changes: List[FileChange] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [change.path for change in self.changes]


def parse_diff(diff: str) -> ParsedDiff:
    """Split a unified git diff into one ``FileChange`` per destination path.

    Quoted headers (``diff --git "a/..." "b/..."``) are unquoted. Header lines
    that cannot be read land in ``unreadable`` so the audit can fail closed
    instead of skipping the file.
    """
    parsed = ParsedDiff()
    order: List[str] = []
    flags = {}
    current: Optional[dict] = None
    in_hunks = False

    def _flush() -> None:
        if current is None:
            return
        path = current["path"]
        if path not in flags:
            order.append(path)
            flags[path] = [False, False]
        flags[path][0] = flags[path][0] or current["new"]
        flags[path][1] = flags[path][1] or current["deleted"]

    for line in (diff or "").splitlines():
        if line.startswith(_HEADER_PREFIX):
            _flush()
            in_hunks = False
            paths = _parse_header_paths(line[len(_HEADER_PREFIX):])
            if paths is None:
                parsed.unreadable.append(line)
                current = None
            else:
                current = {"path": paths[1], "new": False, "deleted": False}
            continue
        if current is None or in_hunks:
            continue
        if line.startswith("@@"):
            in_hunks = True
        elif line.startswith("new file mode"):
            current["new"] = True
        elif line.startswith("deleted file mode"):
            current["deleted"] = True
        elif line.startswith("rename to "):
            current["path"] = _read_path(line[len("rename to "):]) or current["path"]
        elif line.startswith("+++ ") and line[4:] != "/dev/null":
            target = _read_path(line[4:])
            if target and target.startswith("b/"):
                current["path"] = target[2:]
    _flush()

    parsed.changes = [FileChange(path, flags[path][0], flags[path][1]) for path in order]
    return parsed


def extract_changed_files(diff: str) -> List[str]:
    """Destination path of every file pair in a unified git diff, deduplicated."""
    return parse_diff(diff).paths


def validate_diff(diff: str, skill: Skill, config: AICoderConfig) -> DiffValidationResult:
    rules = config.rules
    parsed = parse_diff(diff)
    files = parsed.paths
    if not files and not parsed.unreadable:
        return DiffValidationResult(valid=False, error="No changes detected in the diff.")

    violations: List[str] = []

    max_files = effective_max_files(skill, config)
    touched = len(files) + len(parsed.unreadable)
    if touched > max_files:
        violations.append(f"Too many files changed: {touched} (max: {max_files})")

    for path in files:
        if matches_any_pattern(path, rules.blocked):
            violations.append(f"Blocked file modified: {path}")

    allowed = effective_allowed_paths(skill, config)
    for path in files:
        if not matches_any_pattern(path, allowed):
            violations.append(f"File not in allowed paths: {path}")

    if not rules.allow_dependency_changes:
        dep_files = [path for path in files if path.rsplit("/", 1)[-1] in DEPENDENCY_MANIFESTS]
        if dep_files:
            violations.append(f"Dependency file modified: {', '.join(dep_files)}")

    if not rules.allow_delete_files:
        for change in parsed.changes:
            if change.deleted_file:
                violations.append(f"File deletion not allowed: {change.path}")

    if not effective_allow_new_files(skill, config):
        for change in parsed.changes:
            if change.new_file:
                violations.append(f"New file creation not allowed: {change.path}")

    for line in parsed.unreadable:
        violations.append(f"Unreadable diff header: {line}")

    if violations:
        return DiffValidationResult(
            valid=False,
            error=f"Diff validation failed with {len(violations)} violation(s).",
            violations=violations,
        )
    return DiffValidationResult(valid=True)


def _parse_header_paths(rest: str) -> Optional[Tuple[str, str]]:
    if rest.startswith('"'):
        first, remainder = _read_quoted(rest)
        if first is None or not remainder.startswith(" "):
            return None
        second = _read_path(remainder[1:])
    elif '"' in rest:
        # An unquoted path never contains a double quote, so the quoted
        # destination starts at the first one.
        split = rest.find(' "')
        if split < 0:
            return None
        first, second = rest[:split], _read_path(rest[split + 1:])
    else:
        first, second = _split_unquoted(rest)
    if not first or not second or not first.startswith("a/") or not second.startswith("b/"):
        return None
    return first[2:], second[2:]


def _split_unquoted(rest: str) -> Tuple[Optional[str], Optional[str]]:
    half = (len(rest) - 1) // 2
    if len(rest) % 2 == 1 and rest[half] == " " and rest[2:half] == rest[half + 3:]:
        return rest[:half], rest[half + 1:]
    split = rest.find(" b/")
    if split < 0:
        return None, None
    return rest[:split], rest[split + 1:]


def _read_path(text: str) -> Optional[str]:
    # git appends a tab to ---/+++ names that contain spaces
    if text.endswith("\t"):
        text = text[:-1]
    if not text.startswith('"'):
        return text or None
    value, remainder = _read_quoted(text)
    if value is None or remainder:
        return None
    return value


def _read_quoted(text: str) -> Tuple[Optional[str], str]:
    """Undo git's C-style path quoting; octal escapes are raw UTF-8 bytes."""
    buf = bytearray()
    idx = 1
    while idx < len(text):
        ch = text[idx]
        if ch == '"':
            return buf.decode("utf-8", errors="replace"), text[idx + 1:]
        if ch != "\\":
            buf.extend(ch.encode("utf-8"))
            idx += 1
            continue
        esc = text[idx + 1:idx + 2]
        if esc and esc in "01234567":
            digits = text[idx + 1:idx + 4]
            if len(digits) != 3 or any(d not in "01234567" for d in digits) or int(digits, 8) > 255:
                return None, ""
            buf.append(int(digits, 8))
            idx += 4
        elif esc and esc in _C_ESCAPES:
            buf.append(_C_ESCAPES[esc])
            idx += 2
        else:
            return None, ""
    return None, ""


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------


def matches_any_pattern(path: str, patterns: Iterable[str]) -> bool:
    return any(match_glob(path, pattern) for pattern in patterns)


def match_glob(path: str, pattern: str) -> bool:
    """``**`` crosses path separators, ``*`` stays within one segment.

    Every other character is literal, including regex metacharacters such as
    the parentheses of route groups (``app/(dashboard)/**``).
    """
    return _glob_regex(pattern).fullmatch(path) is not None


@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> Pattern[str]:
    parts: List[str] = []
    idx = 0
    while idx < len(pattern):
        if pattern.startswith("**", idx):
            parts.append(".*")
            idx += 2
        elif pattern[idx] == "*":
            parts.append("[^/]*")
            idx += 1
        else:
            parts.append(re.escape(pattern[idx]))
            idx += 1
    return re.compile("".join(parts), re.DOTALL)
