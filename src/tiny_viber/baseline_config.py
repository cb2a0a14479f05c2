"""Static baseline policy configuration.

Operators can replace the whole baseline with a JSON file
(``AI_CODER_CONFIG_PATH``); runtime edits go through the override store and
are merged on top of this per request.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from tiny_viber.domain.config_models import AICoderConfig, load_config

PR_TEMPLATE = """## AI-Generated Change

**Summary:** {{summary}}

### Modified Files
{{files}}

### Skill Used
{{skill}}

---
_Generated via Tiny Viber by {{user}}_"""


def baseline_config_data(repo: Optional[str] = None) -> Dict[str, Any]:
    return {
        "project": {
            "name": "Project Dashboard",
            "repo": repo or os.environ.get("GITHUB_REPO") or "yourorg/project-dashboard",
            "defaultBranch": "main",
        },
        "rules": {
            "allowed": [
                "components/**",
                "app/(dashboard)/**",
                "lib/utils/**",
                "lib/data/**",
                "public/**",
            ],
            "blocked": [
                "lib/firebase/**",
                "lib/ai-coder/**",
                "contexts/AuthContext.tsx",
                "firestore.rules",
                "firebase.json",
                ".env*",
                "ai-coder.config.ts",
                "app/api/**",
            ],
            "constraints": [
                "Do NOT modify authentication or authorization logic",
                "Do NOT add new npm dependencies without explicit approval",
                "Always use existing shadcn/ui components from components/ui/",
                "Maintain TypeScript strict mode, no `any` types",
                "Follow existing code patterns and naming conventions",
                "Use Tailwind CSS for all styling, no inline styles or CSS modules",
                "If the request is unclear or ambiguous, ask a clarifying question before implementing",
                "Default to the simpler implementation when multiple approaches exist",
            ],
            "maxFilesPerChange": 10,
            "allowNewFiles": True,
            "allowDeleteFiles": False,
            "allowDependencyChanges": False,
        },
        "skills": [
            {
                "id": "ui-enhancement",
                "name": "UI Enhancement",
                "description": "Modify UI components, layouts, and styling",
                "icon": "Palette",
                "prompt": (
                    "You are enhancing UI components. Follow these rules strictly:\n"
                    "- Use existing shadcn/ui components from components/ui/. Never create custom primitives.\n"
                    "- Use Tailwind CSS utility classes only. No inline styles or CSS modules.\n"
                    "- Dark mode: all changes must work in both light and dark mode.\n"
                    "Ensure all changes are responsive and accessible."
                ),
                "allowedPaths": ["components/**", "app/**"],
            },
            {
                "id": "copy-update",
                "name": "Copy & Content",
                "description": "Update text, labels, and content",
                "icon": "TextAa",
                "prompt": (
                    "You are updating text content only. Make minimal changes to the code: only modify "
                    "string literals and text content. Do not restructure components or change logic."
                ),
                "allowedPaths": ["components/**", "app/**"],
                "maxFilesPerChange": 5,
            },
            {
                "id": "new-feature",
                "name": "New Feature",
                "description": "Add new pages, components, or functionality",
                "icon": "PlusCircle",
                "prompt": (
                    "You are adding a new feature. You MUST follow this workflow:\n"
                    "1. FIRST, call create_plan with a clear title, overview, and a numbered list of steps.\n"
                    "2. Before coding, call update_plan to mark all steps as 'in_progress'.\n"
                    "3. Call trigger_code_change with a detailed prompt covering ALL plan items.\n"
                    "4. After the PR is created, call update_plan to mark all items as 'done'.\n\n"
                    "Follow existing patterns in the codebase. Reuse existing components and utilities."
                ),
                "allowNewFiles": True,
                "requiresApproval": True,
            },
            {
                "id": "bug-fix",
                "name": "Bug Fix",
                "description": "Fix reported bugs and issues",
                "icon": "Bug",
                "prompt": (
                    "You are fixing a bug. Follow these rules:\n"
                    "- Make the minimal change necessary to fix the issue.\n"
                    "- Add a brief comment explaining the fix.\n"
                    "- Do NOT refactor unrelated code.\n"
                    "- If the root cause is unclear, explain what you found and ask for more context."
                ),
            },
            {
                "id": "data-backend",
                "name": "Data & Backend",
                "description": "Add or modify collections, queries, and data hooks",
                "icon": "Database",
                "prompt": (
                    "You are modifying data operations. Follow the existing patterns exactly:\n"
                    "- Service files: lib/firebase/services/{collection}.ts with create/get/update/delete.\n"
                    "- Hooks: hooks/use{Domain}.ts with realtime subscriptions.\n"
                    "- Every document needs: ownerId, createdAt, updatedAt.\n"
                    "- If adding a new collection, also create the corresponding service file AND hook."
                ),
                "allowedPaths": ["lib/firebase/services/**", "hooks/**", "lib/data/**"],
                "requiresApproval": True,
            },
        ],
        "git": {
            "branchPrefix": "ai/",
            "commitPrefix": "ai:",
            "prTemplate": PR_TEMPLATE,
            "autoMerge": True,
            "requiredChecks": [],
        },
        "sandbox": {
            "provider": "docker",
            "templateId": os.environ.get("SANDBOX_TEMPLATE_ID") or "tiny-viber/claude-code-sandbox:latest",
            "timeoutMs": 600_000,
        },
        "deploy": {
            "provider": "vercel",
            "waitForPreview": True,
        },
    }


def load_baseline_config(path: Optional[Path] = None, repo: Optional[str] = None) -> AICoderConfig:
    """Load the baseline from ``path`` when given, otherwise the built-in one.

    Raises ``ValueError`` (pydantic ``ValidationError``) for an invalid baseline.
    """
    if path is not None:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object at top level of {path}")
        if repo:
            data.setdefault("project", {})["repo"] = repo
        return load_config(data)
    return load_config(baseline_config_data(repo=repo))
