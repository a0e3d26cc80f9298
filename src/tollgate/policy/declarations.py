"""
Declaration models for policy TOML files.

These models describe rules exactly as authors write them::

    [[rule]]
    toolName = "run_shell_command"
    commandPrefix = ["git status", "git log"]
    decision = "allow"
    priority = 100

    [[safety_checker]]
    toolName = "write_file"
    priority = 100
    [safety_checker.checker]
    type = "in-process"
    name = "allowed-path"

Validation here covers single fields only (types, ranges, enums). Rules that
involve several fields (shell-only keys, mutually exclusive patterns) are
checked by the loader, which reports them as rule_validation errors.
"""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from tollgate.policy.priority import MAX_DECLARED_PRIORITY, MIN_DECLARED_PRIORITY
from tollgate.schema import ApprovalMode, CheckerSpec, PolicyDecision


def _validate_priority(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = "priority must be an integer"
        raise ValueError(msg)
    if value < MIN_DECLARED_PRIORITY:
        msg = f"priority must be >= {MIN_DECLARED_PRIORITY}"
        raise ValueError(msg)
    if value > MAX_DECLARED_PRIORITY:
        msg = f"priority must be <= {MAX_DECLARED_PRIORITY}"
        raise ValueError(msg)
    return value


def _validate_string_or_list(value: Any, field_name: str) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    msg = f"{field_name} must be a string or an array of strings"
    raise ValueError(msg)


class _Declaration(BaseModel):
    """Fields shared by rule and safety checker declarations."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    tool_name: str | list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("toolName", "tool_name"),
    )
    mcp_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("mcpName", "serverName", "mcp_name"),
        min_length=1,
    )
    args_pattern: str | None = Field(
        default=None,
        validation_alias=AliasChoices("argsPattern", "args_pattern"),
    )
    priority: int = Field(...)
    modes: list[ApprovalMode] | None = None
    tool_annotations: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("toolAnnotations", "tool_annotations"),
    )

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Priority must be an integer in [0, 999]; never clamped."""
        return _validate_priority(v)

    @field_validator("tool_name", mode="before")
    @classmethod
    def validate_tool_name(cls, v: Any) -> Any:
        """toolName is a string or an array of strings."""
        return _validate_string_or_list(v, "toolName")

    def tool_names(self) -> list[str | None]:
        """Tool names this declaration expands to (None = every tool)."""
        if self.tool_name is None:
            return [None]
        if isinstance(self.tool_name, str):
            return [self.tool_name]
        return list(self.tool_name)


class RuleDeclaration(_Declaration):
    """
    A ``[[rule]]`` block.

    Attributes:
        tool_name: One tool name or a list (expanded into one rule each)
        mcp_name: Originating server; "*" matches any server
        command_prefix: Shell command prefix(es), shell tool only
        command_regex: Shell command regex, shell tool only
        args_pattern: Raw pattern against the JSON-serialized arguments
        decision: allow, deny or ask_user
        priority: Integer in [0, 999], relative to the file's tier
        modes: Approval modes the rule applies in
        tool_annotations: Required capability flags
        deny_message: Message surfaced on denial
        allow_redirection: Permit shell output redirection
    """

    command_prefix: str | list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("commandPrefix", "command_prefix"),
    )
    command_regex: str | None = Field(
        default=None,
        validation_alias=AliasChoices("commandRegex", "command_regex"),
    )
    decision: PolicyDecision
    deny_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("deny_message", "denyMessage"),
    )
    allow_redirection: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("allow_redirection", "allowRedirection"),
    )

    @field_validator("command_prefix", mode="before")
    @classmethod
    def validate_command_prefix(cls, v: Any) -> Any:
        """commandPrefix is a string or an array of strings."""
        return _validate_string_or_list(v, "commandPrefix")


class SafetyCheckerDeclaration(_Declaration):
    """A ``[[safety_checker]]`` block with its nested ``checker`` table."""

    checker: CheckerSpec


class PolicyDocument(BaseModel):
    """
    Top-level shape of a policy file.

    Blocks are kept as raw tables so each one can be validated on its own.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule: list[dict[str, Any]] = Field(default_factory=list)
    safety_checker: list[dict[str, Any]] = Field(default_factory=list)
