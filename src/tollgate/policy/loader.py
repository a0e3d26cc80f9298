"""
Policy loader for Tollgate.

Reads TOML policy files from one or more paths and compiles their
declarations into PolicyRule and SafetyCheckerRule values.

Pipeline (per file):
    1. Parse     - tomllib; failure is a toml_parse error for the file
    2. Validate  - each block against its declaration model; failure is a
                   schema_validation error for that block only
    3. Check     - cross-field constraints; failure is a rule_validation error
    4. Compile   - build argument patterns; failure is a regex_compilation error
    5. Commit    - expand, qualify server names, stamp priority and source

Design Decisions:
    - Partial-failure tolerant: a broken file or block never stops the others
    - A missing path contributes nothing; any other OS error propagates, since
      it describes the environment rather than the policy content
    - Directory contents are read in sorted order so rule order (and the
      equal-priority tie-break that depends on it) is reproducible
"""

import json
import logging
import re
import tomllib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tollgate.errors import PolicyReadError
from tollgate.policy.declarations import (
    PolicyDocument,
    RuleDeclaration,
    SafetyCheckerDeclaration,
)
from tollgate.policy.priority import compose_priority, tier_label, validate_tier
from tollgate.schema import (
    LoadError,
    LoadErrorType,
    PolicyLoadResult,
    PolicyRule,
    SafetyCheckerRule,
)

logger = logging.getLogger(__name__)

POLICY_FILE_SUFFIX = ".toml"
SHELL_TOOL_NAME = "run_shell_command"
SERVER_SEPARATOR = "__"

TierResolver = Callable[[Path], int]


@dataclass(frozen=True)
class PolicyFile:
    """A policy file and its raw bytes."""

    path: Path
    content: bytes


class _BlockError(Exception):
    """Internal: a block failed cross-field checks or pattern compilation."""

    def __init__(self, error_type: LoadErrorType, message: str, details: str) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details


# =============================================================================
# File discovery
# =============================================================================


def read_policy_files(path: Path | str) -> list[PolicyFile]:
    """
    Read the policy files a path contributes.

    A directory contributes its ``*.toml`` files (not recursive); a file
    contributes itself. Nonexistent paths contribute nothing.

    Args:
        path: Policy directory or single policy file

    Returns:
        Files sorted by name

    Raises:
        PolicyReadError: If the path exists but cannot be listed or read
    """
    path = Path(path)
    try:
        if not path.exists():
            return []
        if path.is_dir():
            candidates = sorted(
                p for p in path.iterdir()
                if p.suffix == POLICY_FILE_SUFFIX and p.is_file()
            )
        else:
            candidates = [path]
    except OSError as e:
        raise PolicyReadError(path=str(path), underlying_error=str(e)) from e

    files = []
    for candidate in candidates:
        try:
            files.append(PolicyFile(path=candidate, content=candidate.read_bytes()))
        except FileNotFoundError:
            # Removed between listing and reading
            continue
        except OSError as e:
            raise PolicyReadError(path=str(candidate), underlying_error=str(e)) from e
    return files


# =============================================================================
# Pattern building
# =============================================================================


def _json_fragment(text: str) -> str:
    """Encode text the way it appears inside a JSON string literal."""
    return json.dumps(text, ensure_ascii=False)[1:-1]


def build_args_patterns(
    args_pattern: str | None = None,
    command_prefix: str | list[str] | None = None,
    command_regex: str | None = None,
) -> list[str | None]:
    """
    Turn the argument-matching shorthands into raw pattern strings.

    Patterns are searched in the tool arguments serialized as JSON, so the
    shell shorthands anchor to the ``"command":"`` key rather than to the
    start of the command itself:

    - commandPrefix "git status" -> ``"command":"git\\ status``
    - commandRegex "git (status|log)" -> ``"command":"git (status|log)``

    A commandRegex starting with ``^`` therefore never matches: the caret
    would have to sit at the start of the whole JSON object.

    Returns:
        One pattern per prefix, or a single entry (None when nothing applies)
    """
    if command_prefix is not None:
        prefixes = [command_prefix] if isinstance(command_prefix, str) else command_prefix
        return [
            re.escape(f'"command":"{_json_fragment(prefix)}') for prefix in prefixes
        ]
    if command_regex is not None:
        return [f'"command":"{command_regex}']
    return [args_pattern]


def _compile(pattern: str | None) -> re.Pattern[str] | None:
    if pattern is None:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise _BlockError(
            LoadErrorType.REGEX_COMPILATION,
            "Invalid regex pattern",
            f"Pattern {pattern!r} failed to compile: {e}",
        ) from e


# =============================================================================
# Declaration compilation
# =============================================================================


def qualify_tool_name(tool_name: str | None, mcp_name: str | None) -> str | None:
    """
    Combine a server name with a tool name.

    - server "github", tool "list" -> "github__list"
    - server "*", no tool -> "*__*"
    - server "*", tool "search" -> "*__search"
    - server "github", no tool -> "github__*"
    """
    if mcp_name is None:
        return tool_name
    return f"{mcp_name}{SERVER_SEPARATOR}{tool_name or '*'}"


def _check_shell_fields(decl: RuleDeclaration) -> None:
    shell_keys = [
        key for key, value in (
            ("commandPrefix", decl.command_prefix),
            ("commandRegex", decl.command_regex),
        )
        if value is not None
    ]
    if not shell_keys:
        return

    pattern_keys = shell_keys + (["argsPattern"] if decl.args_pattern is not None else [])
    if len(pattern_keys) > 1:
        raise _BlockError(
            LoadErrorType.RULE_VALIDATION,
            "Conflicting argument patterns",
            f"{', '.join(pattern_keys)} are mutually exclusive",
        )

    tool_names = decl.tool_names()
    if any(name != SHELL_TOOL_NAME for name in tool_names):
        raise _BlockError(
            LoadErrorType.RULE_VALIDATION,
            "Shell-only field on non-shell rule",
            f"{shell_keys[0]} can only be used with toolName = \"{SHELL_TOOL_NAME}\"",
        )


def compile_rule(decl: RuleDeclaration, tier: int, source: str) -> list[PolicyRule]:
    """
    Expand one validated rule declaration into concrete rules.

    Expansion is a cartesian product of tool names and command patterns.

    Raises:
        _BlockError: On cross-field or pattern problems
    """
    _check_shell_fields(decl)

    patterns = [
        _compile(p)
        for p in build_args_patterns(decl.args_pattern, decl.command_prefix, decl.command_regex)
    ]
    priority = compose_priority(tier, decl.priority)
    modes = tuple(decl.modes) if decl.modes else None

    rules = []
    for tool_name in decl.tool_names():
        qualified = qualify_tool_name(tool_name, decl.mcp_name)
        for pattern in patterns:
            rules.append(
                PolicyRule(
                    tool_name=qualified,
                    args_pattern=pattern,
                    tool_annotations=decl.tool_annotations,
                    decision=decl.decision,
                    priority=priority,
                    modes=modes,
                    deny_message=decl.deny_message,
                    allow_redirection=bool(decl.allow_redirection),
                    source=source,
                )
            )
    return rules


def compile_checker(
    decl: SafetyCheckerDeclaration,
    tier: int,
    source: str,
) -> list[SafetyCheckerRule]:
    """Expand one validated safety checker declaration."""
    pattern = _compile(decl.args_pattern)
    priority = compose_priority(tier, decl.priority)
    modes = tuple(decl.modes) if decl.modes else None

    return [
        SafetyCheckerRule(
            tool_name=qualify_tool_name(tool_name, decl.mcp_name),
            args_pattern=pattern,
            tool_annotations=decl.tool_annotations,
            priority=priority,
            modes=modes,
            checker=decl.checker,
            source=source,
        )
        for tool_name in decl.tool_names()
    ]


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        loc = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"{loc}: {item['msg']}")
    return "\n".join(lines)


# =============================================================================
# Loading
# =============================================================================


def load_policy_file(policy_file: PolicyFile, tier: int) -> PolicyLoadResult:
    """
    Compile one policy file.

    Args:
        policy_file: The file to compile
        tier: Trust tier of the file's source

    Returns:
        Rules, checkers and errors from this file alone
    """
    result = PolicyLoadResult()
    file_name = policy_file.path.name
    label = tier_label(tier)
    source = f"{label}: {file_name}"

    def error(
        error_type: LoadErrorType,
        message: str,
        details: str | None = None,
        rule_index: int | None = None,
        suggestion: str | None = None,
    ) -> None:
        result.errors.append(
            LoadError(
                error_type=error_type,
                file_name=file_name,
                tier=label,
                rule_index=rule_index,
                message=message,
                details=details,
                suggestion=suggestion,
            )
        )

    try:
        text = policy_file.content.decode("utf-8")
    except UnicodeDecodeError as e:
        error(LoadErrorType.FILE_READ, "Policy file is not valid UTF-8", str(e))
        return result

    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        error(
            LoadErrorType.TOML_PARSE,
            "TOML parsing failed",
            str(e),
            suggestion="Check for missing brackets, quotes or '=' signs",
        )
        return result

    try:
        document = PolicyDocument.model_validate(data)
    except ValidationError as e:
        error(
            LoadErrorType.SCHEMA_VALIDATION,
            "Invalid policy file structure",
            _format_validation_error(e),
            suggestion="Policy files contain only [[rule]] and [[safety_checker]] blocks",
        )
        return result

    for index, block in enumerate(document.rule):
        try:
            decl = RuleDeclaration.model_validate(block)
        except ValidationError as e:
            error(
                LoadErrorType.SCHEMA_VALIDATION,
                f"Invalid rule at index {index}",
                _format_validation_error(e),
                rule_index=index,
            )
            continue
        try:
            result.rules.extend(compile_rule(decl, tier, source))
        except _BlockError as e:
            error(e.error_type, e.message, e.details, rule_index=index)

    for index, block in enumerate(document.safety_checker):
        try:
            checker_decl = SafetyCheckerDeclaration.model_validate(block)
        except ValidationError as e:
            error(
                LoadErrorType.SCHEMA_VALIDATION,
                f"Invalid safety checker at index {index}",
                _format_validation_error(e),
                rule_index=index,
            )
            continue
        try:
            result.checkers.extend(compile_checker(checker_decl, tier, source))
        except _BlockError as e:
            error(e.error_type, e.message, e.details, rule_index=index)

    return result


def load_policies(
    paths: Iterable[Path | str],
    tier_resolver: TierResolver,
) -> PolicyLoadResult:
    """
    Load and compile every policy file under the given paths.

    Args:
        paths: Policy directories or individual policy files
        tier_resolver: Maps each given path to its trust tier

    Returns:
        PolicyLoadResult with rules and checkers from every valid block and
        one LoadError per rejected file or block

    Raises:
        PolicyReadError: If a path exists but cannot be read
        InvalidTierError: If the resolver returns an unknown tier

    Example:
        >>> result = load_policies([Path("policies")], lambda _: 1)
        >>> [r.source for r in result.rules]
        ['Default: read-only.toml', ...]
    """
    combined = PolicyLoadResult()

    for raw_path in paths:
        path = Path(raw_path)
        tier = validate_tier(tier_resolver(path))

        for policy_file in read_policy_files(path):
            file_result = load_policy_file(policy_file, tier)
            combined.rules.extend(file_result.rules)
            combined.checkers.extend(file_result.checkers)
            combined.errors.extend(file_result.errors)

            logger.debug(
                "Loaded %d rules and %d checkers from %s (%d errors)",
                len(file_result.rules),
                len(file_result.checkers),
                policy_file.path,
                len(file_result.errors),
            )

    return combined


def rule_to_declaration(rule: PolicyRule) -> dict[str, Any]:
    """
    Describe a compiled rule in declaration terms, for display.

    Args pattern text is shown raw; shorthands are not reconstructed.
    """
    data: dict[str, Any] = {"decision": rule.decision.value, "priority": rule.priority}
    if rule.tool_name is not None:
        data["toolName"] = rule.tool_name
    if rule.args_pattern is not None:
        data["argsPattern"] = rule.args_pattern.pattern
    if rule.modes:
        data["modes"] = [mode.value for mode in rule.modes]
    if rule.tool_annotations:
        data["toolAnnotations"] = rule.tool_annotations
    if rule.deny_message:
        data["deny_message"] = rule.deny_message
    if rule.allow_redirection:
        data["allow_redirection"] = True
    data["source"] = rule.source
    return data
