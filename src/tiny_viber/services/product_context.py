"""Product context injected ahead of every system prompt and rules manifest.

Static defaults live here; operator edits stored with the config overrides
replace individual fields when they are non-blank.
"""
from typing import Mapping, Optional, Union

from tiny_viber.domain.config_models import ProductContext, ProductContextOverride

DEFAULT_PRODUCT_CONTEXT = ProductContext(
    product_description=(
        "Freelance Dashboard is a project management platform for freelance designers and "
        "developers. It helps solo freelancers and small studios manage their clients, projects, "
        "invoices, contracts, and team collaboration from a single interface.\n\n"
        "Target user: Solo freelancer or small studio owner.\n"
        "Tech stack: Next.js, React, Tailwind CSS, a realtime document database, shadcn/ui, Phosphor Icons.\n"
        "Auth: role-based access (owner vs client).\n"
        "Hosting: preview deployments are built automatically for every pull request.\n"
        'AI Agent: "Tiny Viber", an in-app assistant that creates code changes via pull requests.'
    ),
    data_model=(
        "Projects are the central entity. Everything connects through them.\n\n"
        "- Client: a company or person you do work for. Linked to invoices and contracts.\n"
        "- Project: belongs to a client. Contains brief, workstreams, tasks, notes, files, and a PRD.\n"
        "- Invoice: belongs to a client, optionally linked to a project. Has line items. "
        "Auto-generated number (INV-YYYY-NNN).\n"
        "- Contract: belongs to a client, optionally linked to a project. Status: draft, sent, signed.\n"
        "- Task: belongs to a project, optionally grouped under a workstream.\n"
        "- Workstream: groups tasks within a project.\n\n"
        "Every document has an ownerId for multi-tenancy. Client-role users only see data linked "
        "to their clientId."
    ),
    storage_patterns=(
        'When someone says "backend", "server", "database", or "API", they mean the realtime '
        "document database. There is no REST API or SQL database.\n\n"
        "- Flat top-level collections, no subcollections.\n"
        "- Realtime updates via subscriptions in React hooks.\n"
        "- Server timestamps for createdAt/updatedAt.\n"
        "- One service file per collection: lib/firebase/services/{collection}.ts\n"
        "- One hook file per domain: hooks/use{Domain}.ts\n"
        "- Convert undefined to null before writes; use batched writes for multi-document updates."
    ),
    style_guide=(
        "Modern, minimal, professional design. Clean layouts with subtle interactions.\n\n"
        "Components: always use shadcn/ui from components/ui/.\n"
        'Icons: Phosphor Icons. Use weight="duotone" for emphasis.\n'
        "Cards: rounded-2xl border border-border bg-background.\n"
        "Spacing: p-4 for cards, p-6 for page sections, gap-2 to gap-4 between elements.\n"
        "Dark mode: use semantic tokens (bg-background, text-foreground). No hardcoded colors.\n"
        "No custom CSS: Tailwind utility classes only."
    ),
    scope_rules=(
        "Stay in scope. Only implement what was asked. Do NOT refactor unrelated code.\n"
        "Ask before guessing. If a request is ambiguous, ask a clarifying question first.\n"
        "Explain blockers. If a request touches blocked files or needs new dependencies, explain why.\n"
        "Default to simple. When multiple approaches exist, choose the simpler one.\n"
        "Small scope means fast delivery. Keep changes minimal and correct."
    ),
)

_FIELDS = ("product_description", "data_model", "storage_patterns", "style_guide", "scope_rules")

_SECTION_TITLES = {
    "product_description": "Product Context",
    "data_model": "Data Model",
    "storage_patterns": "Storage Patterns",
    "style_guide": "Style Guide",
    "scope_rules": "Scope Rules",
}


def merge_product_context(
    overrides: Optional[Union[ProductContext, ProductContextOverride, Mapping[str, object]]] = None,
    base: ProductContext = DEFAULT_PRODUCT_CONTEXT,
) -> ProductContext:
    if overrides is None:
        return base
    if isinstance(overrides, Mapping):
        overrides = ProductContextOverride.model_validate(dict(overrides))
    merged = {}
    for name in _FIELDS:
        candidate = str(getattr(overrides, name, None) or "").strip()
        merged[name] = candidate or getattr(base, name)
    return ProductContext(**merged)


def build_product_context_prompt(ctx: ProductContext) -> str:
    blocks = [f"# {_SECTION_TITLES[name]}\n\n{getattr(ctx, name)}" for name in _FIELDS]
    return "\n\n---\n\n".join(blocks)
