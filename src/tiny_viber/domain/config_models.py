"""Policy configuration for the code change pipeline.

The models accept both ``snake_case`` and the ``camelCase`` keys used by the
persisted override documents. All models are frozen: a resolved
configuration is an immutable snapshot for the lifetime of one request.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiny_viber.domain.errors import UnknownSkillError

REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Rules(_ConfigModel):
    allowed: List[str] = Field(min_length=1)
    blocked: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    max_files_per_change: int = Field(default=10, gt=0)
    allow_new_files: bool = True
    allow_delete_files: bool = False
    allow_dependency_changes: bool = False


class Skill(_ConfigModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    icon: str = ""
    prompt: str = Field(min_length=1)
    allowed_paths: Optional[List[str]] = None
    max_files_per_change: Optional[int] = Field(default=None, gt=0)
    allow_new_files: Optional[bool] = None
    requires_approval: bool = False


class GitPolicy(_ConfigModel):
    branch_prefix: str = "ai/"
    commit_prefix: str = "ai:"
    pr_template: str
    auto_merge: bool = False
    required_checks: List[str] = Field(default_factory=list)


class SandboxPolicy(_ConfigModel):
    provider: str = "docker"
    template_id: str = Field(min_length=1)
    timeout_ms: int = Field(default=180_000, gt=0)


class DeployPolicy(_ConfigModel):
    provider: Literal["vercel", "netlify", "custom"] = "vercel"
    wait_for_preview: bool = True


class ProjectIdentity(_ConfigModel):
    name: str = Field(min_length=1)
    repo: str = Field(pattern=REPO_PATTERN)
    default_branch: str = "main"


class ProductContext(_ConfigModel):
    product_description: str = ""
    data_model: str = ""
    storage_patterns: str = ""
    style_guide: str = ""
    scope_rules: str = ""


class AICoderConfig(_ConfigModel):
    project: ProjectIdentity
    rules: Rules
    skills: List[Skill] = Field(min_length=1)
    git: GitPolicy
    sandbox: SandboxPolicy
    deploy: DeployPolicy = Field(default_factory=DeployPolicy)
    product_context: Optional[ProductContext] = None

    def skill_ids(self) -> List[str]:
        return [skill.id for skill in self.skills]


class RulesOverride(_ConfigModel):
    """Partial rules; only fields that are present replace the baseline."""

    allowed: Optional[List[str]] = None
    blocked: Optional[List[str]] = None
    constraints: Optional[List[str]] = None
    max_files_per_change: Optional[int] = Field(default=None, gt=0)
    allow_new_files: Optional[bool] = None
    allow_delete_files: Optional[bool] = None
    allow_dependency_changes: Optional[bool] = None


class ProductContextOverride(_ConfigModel):
    product_description: Optional[str] = None
    data_model: Optional[str] = None
    storage_patterns: Optional[str] = None
    style_guide: Optional[str] = None
    scope_rules: Optional[str] = None


class ConfigOverrides(_ConfigModel):
    rules: Optional[RulesOverride] = None
    skills: Optional[List[Skill]] = None
    product_context: Optional[ProductContextOverride] = None
    updated_by: Optional[str] = None


def load_config(data: object) -> AICoderConfig:
    """Validate a raw mapping into a configuration. Raises ``ValueError``."""
    return AICoderConfig.model_validate(data)


def get_skill_by_id(config: AICoderConfig, skill_id: str) -> Skill:
    for skill in config.skills:
        if skill.id == skill_id:
            return skill
    raise UnknownSkillError(skill_id, config.skill_ids())
