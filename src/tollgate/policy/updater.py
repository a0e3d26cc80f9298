"""
Runtime rule injection.

Two kinds of rules are added while the host runs:

- Subagents discovered at runtime become invocable tools
- "Always allow" answers from the confirmation prompt

An "always allow" answer marked ``persist`` is also appended to the
workspace's auto-saved policy file, so it applies to later sessions once the
workspace policies are trusted again.
"""

import logging
import os
import re
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tollgate.errors import PolicyPersistError, PolicyUpdateError
from tollgate.filelock import locked_file
from tollgate.policy.engine import PolicyEngine
from tollgate.policy.loader import SERVER_SEPARATOR, build_args_patterns
from tollgate.policy.priority import ALWAYS_ALLOW_PRIORITY, PRIORITY_SUBAGENT_TOOL
from tollgate.schema import PolicyDecision, PolicyRule
from tollgate.storage import Storage

logger = logging.getLogger(__name__)

SUBAGENT_SOURCE = "AgentRegistry (Dynamic)"
CONFIRMED_SOURCE = "Dynamic (Confirmed)"

# Declared priorities of saved rules, within the workspace tier
PERSISTED_TOOL_PRIORITY = 100
PERSISTED_SERVER_TOOL_PRIORITY = 200

MAX_PATTERN_LENGTH = 2048

# A quantified group containing a quantifier, e.g. (a+)+ or (\w*){2,}
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[*+}](?:[^()\\]|\\.)*\)[*+{]")


class PolicyUpdate(BaseModel):
    """
    An "always allow" answer for a tool.

    Attributes:
        tool_name: Tool to allow (canonical name for server tools)
        mcp_name: Server the tool belongs to, if any
        command_prefix: Shell command prefix(es) to allow
        args_pattern: Raw pattern against the JSON-serialized arguments
        persist: Also save the rule to the auto-saved workspace policy file
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool_name: str = Field(..., min_length=1)
    mcp_name: str | None = Field(default=None, min_length=1)
    command_prefix: str | list[str] | None = None
    args_pattern: str | None = None
    persist: bool = False

    @field_validator("command_prefix")
    @classmethod
    def validate_command_prefix(cls, v: str | list[str] | None) -> str | list[str] | None:
        """An empty prefix list would silently allow nothing."""
        if isinstance(v, list) and not v:
            msg = "command_prefix must not be an empty list"
            raise ValueError(msg)
        return v


def is_safe_pattern(pattern: str) -> bool:
    """
    Whether a user-supplied argument pattern may be compiled.

    Rejects patterns that do not compile, very long patterns, and quantified
    groups that contain a quantifier themselves, the usual shape of
    catastrophic backtracking.
    """
    if len(pattern) > MAX_PATTERN_LENGTH:
        return False
    try:
        re.compile(pattern)
    except re.error:
        return False
    return _NESTED_QUANTIFIER.search(pattern) is None


def register_subagent(engine: PolicyEngine, name: str) -> PolicyRule:
    """
    Allow a newly registered subagent to be invoked as a tool.

    The rule sits just above the default tier's write rules but below the
    plan-mode catch-all deny, so plan mode still blocks it.
    """
    rule = PolicyRule(
        tool_name=name,
        decision=PolicyDecision.ALLOW,
        priority=PRIORITY_SUBAGENT_TOOL,
        source=SUBAGENT_SOURCE,
    )
    engine.add_rule(rule)
    return rule


def apply_policy_update(
    engine: PolicyEngine,
    update: PolicyUpdate,
    storage: Storage | None = None,
) -> list[PolicyRule]:
    """
    Add the rules for an "always allow" answer.

    Args:
        engine: Engine to update
        update: The confirmed update
        storage: Filesystem locations used when ``update.persist`` is set;
            defaults to Storage()

    Returns:
        The rules that were added

    Raises:
        PolicyUpdateError: If args_pattern is invalid or unsafe; nothing is added
        PolicyPersistError: If the rule cannot be saved; the in-memory rules
            stay in place
    """
    if update.command_prefix is not None:
        # Escaped literal prefixes, always safe
        patterns = [
            re.compile(p)
            for p in build_args_patterns(command_prefix=update.command_prefix)
            if p is not None
        ]
    elif update.args_pattern is not None:
        if not is_safe_pattern(update.args_pattern):
            raise PolicyUpdateError(
                tool=update.tool_name,
                pattern=update.args_pattern,
                underlying_error="pattern does not compile or may backtrack excessively",
            )
        patterns = [re.compile(update.args_pattern)]
    else:
        patterns = [None]

    rules = [
        PolicyRule(
            tool_name=update.tool_name,
            args_pattern=pattern,
            decision=PolicyDecision.ALLOW,
            priority=ALWAYS_ALLOW_PRIORITY,
            source=CONFIRMED_SOURCE,
        )
        for pattern in patterns
    ]
    for rule in rules:
        engine.add_rule(rule)

    logger.debug("Always-allow added %d rule(s) for %s", len(rules), update.tool_name)

    if update.persist:
        persist_policy_update(update, storage or Storage())
    return rules


# =============================================================================
# Persistence
# =============================================================================


def _rule_declaration(update: PolicyUpdate) -> dict[str, Any]:
    """The ``[[rule]]`` table saved for an update."""
    if update.mcp_name:
        prefix = f"{update.mcp_name}{SERVER_SEPARATOR}"
        tool_name = update.tool_name
        if tool_name.startswith(prefix):
            tool_name = tool_name[len(prefix):]
        declaration: dict[str, Any] = {
            "mcpName": update.mcp_name,
            "toolName": tool_name,
            "decision": PolicyDecision.ALLOW.value,
            "priority": PERSISTED_SERVER_TOOL_PRIORITY,
        }
    else:
        declaration = {
            "toolName": update.tool_name,
            "decision": PolicyDecision.ALLOW.value,
            "priority": PERSISTED_TOOL_PRIORITY,
        }

    if update.command_prefix is not None:
        declaration["commandPrefix"] = update.command_prefix
    elif update.args_pattern is not None:
        declaration["argsPattern"] = update.args_pattern
    return declaration


def _read_saved_policy(path: Path) -> dict[str, Any]:
    try:
        document = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to parse %s, overwriting with new policy: %s", path, e)
        return {}

    if not isinstance(document.get("rule", []), list):
        logger.warning("%s has a non-array 'rule' entry, overwriting with new policy", path)
        return {}
    return document


def _write_saved_policy(path: Path, document: dict[str, Any]) -> None:
    temp_path = None
    try:
        # Atomic write: write to temp file, then rename
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = Path(f.name)
            tomli_w.dump(document, f)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


def persist_policy_update(update: PolicyUpdate, storage: Storage) -> Path:
    """
    Append an "always allow" rule to the auto-saved workspace policy file.

    Server tools are saved with their server under ``mcpName`` at a higher
    declared priority than plain tools. Existing rules in the file are kept;
    an unreadable file is replaced. Concurrent writers are serialized by a
    lock on the file.

    Returns:
        Path of the policy file written

    Raises:
        PolicyPersistError: If the file cannot be written
    """
    path = storage.auto_saved_policy_path
    try:
        with locked_file(path):
            document = _read_saved_policy(path)
            document.setdefault("rule", []).append(_rule_declaration(update))
            _write_saved_policy(path, document)
    except OSError as e:
        raise PolicyPersistError(
            path=str(path),
            tool=update.tool_name,
            underlying_error=str(e),
        ) from e

    logger.info("Saved always-allow rule for %s to %s", update.tool_name, path)
    return path
