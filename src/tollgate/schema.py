"""
Schema definitions for Tollgate.

This module defines the Pydantic models shared across Tollgate:
- PolicyRule/SafetyCheckerRule: Compiled authorization rules
- ToolCall/CheckResult: What the engine is asked and what it answers
- LoadError/PolicyLoadResult: The outcome of loading policy files
- IntegrityResult: The outcome of an integrity check
- PolicySettings: Host settings that contribute extra rules

Design Decisions:
    - Compiled rules are immutable (frozen=True); a reload replaces them
    - Unknown fields are rejected (extra="forbid")
    - Declarations as written in TOML live in tollgate.policy.declarations;
      these models are what the loader produces from them
"""

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tollgate.errors import SettingsError, SettingsNotFoundError


# =============================================================================
# Enums
# =============================================================================


class PolicyDecision(str, Enum):
    """The three possible outcomes of a policy check."""

    ALLOW = "allow"
    DENY = "deny"
    ASK_USER = "ask_user"


class ApprovalMode(str, Enum):
    """
    Operating mode of the host.

    Rules may be scoped to a subset of modes via their ``modes`` field.
    """

    DEFAULT = "default"
    AUTO_EDIT = "autoEdit"
    YOLO = "yolo"
    PLAN = "plan"


class LoadErrorType(str, Enum):
    """Stage of the load pipeline that rejected a file or rule."""

    TOML_PARSE = "toml_parse"
    SCHEMA_VALIDATION = "schema_validation"
    RULE_VALIDATION = "rule_validation"
    REGEX_COMPILATION = "regex_compilation"
    FILE_READ = "file_read"


class IntegrityStatus(str, Enum):
    """Result of comparing a policy directory against its accepted baseline."""

    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    NEW = "NEW"


# =============================================================================
# Rule Models
# =============================================================================


class PolicyRule(BaseModel):
    """
    One compiled authorization rule.

    Attributes:
        tool_name: Tool to match; None matches every tool. Supports "*" and
            the two-segment "server__tool" form with "*" in either segment.
        args_pattern: Pattern searched in the call's stable JSON arguments
        tool_annotations: Capability flags the call must report with equal values
        decision: What to do when this rule wins
        priority: Composite priority (tier + declared/1000); higher wins
        modes: Approval modes the rule applies in; None means all modes
        deny_message: Message surfaced when this rule denies a call
        allow_redirection: Permit shell output redirection under an ALLOW
        source: Provenance for diagnostics (e.g. "User: team.toml")
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool_name: str | None = Field(
        default=None,
        description="Tool name or wildcard pattern; None matches every tool",
    )
    args_pattern: re.Pattern[str] | None = Field(
        default=None,
        description="Pattern searched in the JSON-serialized tool arguments",
    )
    tool_annotations: dict[str, Any] | None = Field(
        default=None,
        description="Required capability annotations",
    )
    decision: PolicyDecision = Field(..., description="Decision when this rule wins")
    priority: float = Field(
        default=0.0,
        description="Composite priority; higher wins",
        ge=0,
    )
    modes: tuple[ApprovalMode, ...] | None = Field(
        default=None,
        description="Approval modes this rule applies in",
    )
    deny_message: str | None = Field(
        default=None,
        description="Message surfaced when this rule denies a call",
    )
    allow_redirection: bool = Field(
        default=False,
        description="Allow shell output redirection for matching commands",
    )
    source: str = Field(default="", description="Where this rule came from")


class CheckerSpec(BaseModel):
    """
    Opaque description of an external safety checker.

    Only ``type`` and ``name`` are interpreted; everything else is passed
    through untouched to whoever runs the checker.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = Field(..., description="Checker kind: 'in-process' or 'external'")
    name: str = Field(..., min_length=1, description="Checker identifier")


class SafetyCheckerRule(BaseModel):
    """
    A safety checker bound to the tools it guards.

    Checkers share the rule tiering and priority treatment but are never
    evaluated by the matching algorithm itself.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool_name: str | None = None
    args_pattern: re.Pattern[str] | None = None
    tool_annotations: dict[str, Any] | None = None
    priority: float = Field(default=0.0, ge=0)
    modes: tuple[ApprovalMode, ...] | None = None
    checker: CheckerSpec
    source: str = ""


# =============================================================================
# Runtime Models
# =============================================================================


class ToolCall(BaseModel):
    """
    The tool-call descriptor handed to the engine.

    Attributes:
        name: Tool name, possibly already qualified as "server__tool"
        args: Tool arguments; None when the call carries none
        server_name: Originating server, if the tool comes from one
        annotations: Capability flags reported by the tool (e.g. readOnlyHint)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Tool name")
    args: dict[str, Any] | None = Field(default=None, description="Tool arguments")
    server_name: str | None = Field(default=None, description="Originating server")
    annotations: dict[str, Any] | None = Field(
        default=None,
        description="Capability annotations reported by the tool",
    )


class CheckResult(BaseModel):
    """
    Outcome of PolicyEngine.check.

    Attributes:
        decision: The effective decision
        rule: The rule responsible, or None when the default applied or an
            inherent shell check (such as redirection) decided
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    decision: PolicyDecision
    rule: PolicyRule | None = None

    @property
    def source(self) -> str:
        """Provenance of the deciding rule."""
        if self.rule is None:
            return "default"
        return self.rule.source

    @property
    def deny_message(self) -> str | None:
        """Message to surface for a denial, if the deciding rule carries one."""
        if self.decision != PolicyDecision.DENY or self.rule is None:
            return None
        return self.rule.deny_message


class LoadError(BaseModel):
    """
    A problem found while loading policy files.

    Attributes:
        error_type: Pipeline stage that rejected the input
        file_name: Name of the offending file
        tier: Label of the tier the file belongs to
        rule_index: Index of the offending block, None for file-level errors
        message: Short description
        details: Longer explanation (validator output, pattern text)
        suggestion: Optional hint for fixing the problem
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    error_type: LoadErrorType
    file_name: str
    tier: str
    rule_index: int | None = None
    message: str
    details: str | None = None
    suggestion: str | None = None


class PolicyLoadResult(BaseModel):
    """Rules, checkers and errors accumulated across every loaded file."""

    model_config = ConfigDict(extra="forbid")

    rules: list[PolicyRule] = Field(default_factory=list)
    checkers: list[SafetyCheckerRule] = Field(default_factory=list)
    errors: list[LoadError] = Field(default_factory=list)


class IntegrityResult(BaseModel):
    """
    Outcome of an integrity check.

    Attributes:
        status: MATCH, MISMATCH or NEW
        hash: Current SHA-256 of the directory's policy files (lowercase hex)
        file_count: Number of files included in the hash
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: IntegrityStatus
    hash: str
    file_count: int = Field(..., ge=0)


class PolicyEngineConfig(BaseModel):
    """Everything needed to construct a PolicyEngine."""

    model_config = ConfigDict(extra="forbid")

    rules: list[PolicyRule] = Field(default_factory=list)
    checkers: list[SafetyCheckerRule] = Field(default_factory=list)
    default_decision: PolicyDecision = PolicyDecision.ASK_USER
    approval_mode: ApprovalMode = ApprovalMode.DEFAULT
    non_interactive: bool = False
    errors: list[LoadError] = Field(default_factory=list)


# =============================================================================
# Settings Models
# =============================================================================


class ToolsSettings(BaseModel):
    """
    Tool allow/exclude lists from settings.

    Attributes:
        allowed: Tools allowed without confirmation. "run_shell_command(git)"
            allows only shell commands starting with "git".
        exclude: Tools that are always denied
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class McpSettings(BaseModel):
    """Server-level allow/exclude lists from settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: list[str] = Field(default_factory=list)
    excluded: list[str] = Field(default_factory=list)


class McpServerSettings(BaseModel):
    """Per-server settings; only ``trust`` matters to the policy engine."""

    model_config = ConfigDict(frozen=True, extra="allow")

    trust: bool = False


class PolicySettings(BaseModel):
    """
    Host settings relevant to policy construction.

    Attributes:
        policy_paths: User-tier policy paths replacing the default user directory
        workspace_policies_dir: Trusted workspace policy directory, if any
        tools: Tool allow/exclude lists
        mcp: Server allow/exclude lists
        mcp_servers: Per-server settings
        approval_mode: Initial approval mode
        non_interactive: Whether ASK_USER must become DENY
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy_paths: list[str] = Field(default_factory=list)
    workspace_policies_dir: str | None = None
    tools: ToolsSettings = Field(default_factory=ToolsSettings)
    mcp: McpSettings = Field(default_factory=McpSettings)
    mcp_servers: dict[str, McpServerSettings] = Field(default_factory=dict)
    approval_mode: ApprovalMode = ApprovalMode.DEFAULT
    non_interactive: bool = False


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_settings(path: Path | str) -> PolicySettings:
    """
    Load settings from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated PolicySettings object

    Raises:
        SettingsNotFoundError: If the file doesn't exist
        SettingsError: If the YAML is malformed or doesn't match the schema
    """
    path = Path(path)
    if not path.exists():
        raise SettingsNotFoundError(path=str(path))

    with path.open(encoding="utf-8") as f:
        content = f.read()

    return _parse_settings(content, str(path))


def load_settings_from_string(content: str) -> PolicySettings:
    """Load settings from a YAML string."""
    return _parse_settings(content, "<string>")


def _parse_settings(content: str, origin: str) -> PolicySettings:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SettingsError(path=origin, validation_error=f"Invalid YAML: {e}") from e

    if data is None:
        return PolicySettings()

    try:
        return PolicySettings.model_validate(data)
    except ValidationError as e:
        raise SettingsError(path=origin, validation_error=str(e)) from e
