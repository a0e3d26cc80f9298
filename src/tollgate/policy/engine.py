"""
Policy Engine for Tollgate.

The Policy Engine decides, for every tool call an agent wants to make,
whether it is allowed outright, denied outright or needs a human to confirm.

Design Principles:
    - Fail-closed: when no rule matches, the default is ASK_USER (DENY when
      nobody can be asked)
    - Predictable: rules are ordered by composite priority, ties broken by
      declaration order, so the same inputs always produce the same decision
    - Auditable: every decision carries the rule (and its source) that made it

How it works:
    1. Engine receives a ToolCall and the current approval mode
    2. Computes the canonical "server__tool" name
    3. Walks the priority-sorted rules; the first applicable match wins
    4. Shell commands are additionally split and checked part by part

Concurrency:
    The rule list is an immutable tuple. check() reads one snapshot of it;
    mutations build a new tuple under a lock and publish it with a single
    assignment, so a check never sees a half-applied update.

Security Note:
    This module is security-critical. Changes should be reviewed carefully.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from tollgate.policy.loader import SERVER_SEPARATOR, SHELL_TOOL_NAME
from tollgate.policy.priority import tier_of
from tollgate.policy.shell import ShellParseError, parse_command
from tollgate.schema import (
    ApprovalMode,
    CheckResult,
    PolicyDecision,
    PolicyEngineConfig,
    PolicyRule,
    SafetyCheckerRule,
    ToolCall,
)

logger = logging.getLogger(__name__)

# Modes in which the user has already opted into unattended file changes
_REDIRECTION_TRUSTED_MODES = frozenset({ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO})


def stable_stringify(args: Mapping[str, Any] | None) -> str:
    """
    Serialize tool arguments the way argument patterns expect to see them.

    Keys are sorted and separators are compact, so {"command": "ls"} is
    always ``{"command":"ls"}`` regardless of insertion order. Non-ASCII text
    is kept as-is. Nested mappings whose keys are not all strings are
    serialized with their keys converted to strings.
    """
    try:
        return _dump_args(args)
    except TypeError:
        return _dump_args(_stringify_keys(args))


def _dump_args(args: Any) -> str:
    return json.dumps(
        args,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _stringify_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _stringify_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_keys(item) for item in value]
    return value


def canonical_tool_name(name: str, server_name: str | None = None) -> str:
    """Qualify a tool name with its server unless it is already qualified."""
    if server_name and SERVER_SEPARATOR not in name:
        return f"{server_name}{SERVER_SEPARATOR}{name}"
    return name


def tool_name_matches(
    pattern: str | None,
    canonical_name: str,
    server_name: str | None = None,
) -> bool:
    """
    Match a rule's tool name against a canonical tool name.

    - None and "*" match everything
    - "server__tool" patterns may use "*" for either segment; a "*" segment
      matches any non-empty segment, so bare names never match them
    - When the call names its server, a qualified pattern only matches if the
      canonical name really starts with that server (no spoofed prefixes)
    """
    if pattern is None or pattern == "*":
        return True

    if SERVER_SEPARATOR in pattern and server_name:
        if not canonical_name.startswith(f"{server_name}{SERVER_SEPARATOR}"):
            return False

    if "*" not in pattern:
        return pattern == canonical_name

    pattern_server, sep, pattern_tool = pattern.partition(SERVER_SEPARATOR)
    if not sep:
        return False

    name_server, sep, name_tool = canonical_name.partition(SERVER_SEPARATOR)
    if not sep or not name_server or not name_tool:
        return False

    return all(
        value == expected if expected != "*" else bool(value)
        for expected, value in ((pattern_server, name_server), (pattern_tool, name_tool))
    )


def annotations_match(
    required: Mapping[str, Any] | None,
    actual: Mapping[str, Any] | None,
) -> bool:
    """Every required flag must be present on the call with an equal value."""
    if not required:
        return True
    if actual is None:
        return False
    return all(key in actual and actual[key] == value for key, value in required.items())


def _applies_in_mode(modes: tuple[ApprovalMode, ...] | None, mode: ApprovalMode) -> bool:
    return not modes or mode in modes


def _by_priority(rule: PolicyRule | SafetyCheckerRule) -> float:
    return -rule.priority


class PolicyEngine:
    """
    Central decision point for tool calls.

    Usage:
        engine = PolicyEngine(rules, approval_mode=ApprovalMode.DEFAULT)
        result = engine.check(ToolCall(name="read_file", args={"path": "a"}))
        if result.decision == PolicyDecision.ALLOW:
            # run the tool
        elif result.decision == PolicyDecision.ASK_USER:
            # ask for confirmation
        else:
            # refuse, surfacing result.deny_message

    Attributes:
        default_decision: Decision when no rule matches
        non_interactive: Whether ASK_USER must be turned into DENY
    """

    def __init__(
        self,
        rules: Iterable[PolicyRule] = (),
        checkers: Iterable[SafetyCheckerRule] = (),
        approval_mode: ApprovalMode = ApprovalMode.DEFAULT,
        default_decision: PolicyDecision = PolicyDecision.ASK_USER,
        non_interactive: bool = False,
    ) -> None:
        """
        Initialize the policy engine.

        Args:
            rules: Compiled rules, in declaration order
            checkers: Compiled safety checkers, in declaration order
            approval_mode: Mode used when check() is not given one
            default_decision: Decision when no rule matches
            non_interactive: Turn every ASK_USER into DENY
        """
        self._lock = threading.Lock()
        self._rules: tuple[PolicyRule, ...] = tuple(sorted(rules, key=_by_priority))
        self._checkers: tuple[SafetyCheckerRule, ...] = tuple(
            sorted(checkers, key=_by_priority)
        )
        self._approval_mode = approval_mode
        self._generation = 0
        self.default_decision = default_decision
        self.non_interactive = non_interactive

    @classmethod
    def from_config(cls, config: PolicyEngineConfig) -> "PolicyEngine":
        """Build an engine from a PolicyEngineConfig."""
        return cls(
            rules=config.rules,
            checkers=config.checkers,
            approval_mode=config.approval_mode,
            default_decision=config.default_decision,
            non_interactive=config.non_interactive,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        """Current rules, highest priority first."""
        return self._rules

    @property
    def checkers(self) -> tuple[SafetyCheckerRule, ...]:
        """Current safety checkers, highest priority first."""
        return self._checkers

    @property
    def generation(self) -> int:
        """Incremented by every change to the rule or checker set."""
        return self._generation

    @property
    def approval_mode(self) -> ApprovalMode:
        return self._approval_mode

    @approval_mode.setter
    def approval_mode(self, mode: ApprovalMode) -> None:
        self._approval_mode = ApprovalMode(mode)

    # =========================================================================
    # Mutation
    # =========================================================================

    def add_rule(self, rule: PolicyRule) -> None:
        """
        Add a rule to the live set without reloading.

        The new rule ranks after existing rules of equal priority.
        """
        with self._lock:
            self._rules = tuple(sorted((*self._rules, rule), key=_by_priority))
            self._generation += 1
        logger.debug("Added rule for %s at priority %s (%s)", rule.tool_name, rule.priority, rule.source)

    def add_checker(self, checker: SafetyCheckerRule) -> None:
        """Add a safety checker to the live set."""
        with self._lock:
            self._checkers = tuple(sorted((*self._checkers, checker), key=_by_priority))
            self._generation += 1

    def reload(
        self,
        rules: Iterable[PolicyRule],
        checkers: Iterable[SafetyCheckerRule] = (),
    ) -> None:
        """
        Replace every rule and checker at once.

        The new sets are sorted before being published, so concurrent checks
        observe either the old set or the new one in full.
        """
        new_rules = tuple(sorted(rules, key=_by_priority))
        new_checkers = tuple(sorted(checkers, key=_by_priority))
        with self._lock:
            self._rules = new_rules
            self._checkers = new_checkers
            self._generation += 1
        logger.debug("Reloaded %d rules and %d checkers", len(new_rules), len(new_checkers))

    def _remove_rules(self, predicate: Callable[[PolicyRule], bool]) -> int:
        with self._lock:
            kept = tuple(rule for rule in self._rules if not predicate(rule))
            removed = len(self._rules) - len(kept)
            if removed:
                self._rules = kept
                self._generation += 1
        return removed

    def _remove_checkers(self, predicate: Callable[[SafetyCheckerRule], bool]) -> int:
        with self._lock:
            kept = tuple(c for c in self._checkers if not predicate(c))
            removed = len(self._checkers) - len(kept)
            if removed:
                self._checkers = kept
                self._generation += 1
        return removed

    def remove_rules_by_tier(self, tier: int) -> int:
        """Remove every rule whose priority falls in the given tier band."""
        return self._remove_rules(lambda rule: tier_of(rule.priority) == tier)

    def remove_rules_by_source(self, source: str) -> int:
        """Remove every rule with the given source."""
        return self._remove_rules(lambda rule: rule.source == source)

    def remove_checkers_by_tier(self, tier: int) -> int:
        """Remove every checker whose priority falls in the given tier band."""
        return self._remove_checkers(lambda c: tier_of(c.priority) == tier)

    def remove_checkers_by_source(self, source: str) -> int:
        """Remove every checker with the given source."""
        return self._remove_checkers(lambda c: c.source == source)

    def remove_rules_for_tool(self, tool_name: str, source: str | None = None) -> int:
        """
        Remove rules naming exactly this tool.

        Args:
            tool_name: Tool name as written on the rule
            source: Only remove rules from this source, if given

        Returns:
            Number of rules removed
        """
        return self._remove_rules(
            lambda rule: rule.tool_name == tool_name
            and (source is None or rule.source == source)
        )

    def has_rule_for_tool(self, tool_name: str) -> bool:
        """Whether any rule names exactly this tool."""
        return any(rule.tool_name == tool_name for rule in self._rules)

    # =========================================================================
    # Decisions
    # =========================================================================

    def check(self, tool_call: ToolCall, mode: ApprovalMode | None = None) -> CheckResult:
        """
        Decide what to do with a tool call.

        Args:
            tool_call: The call to authorize
            mode: Approval mode; defaults to the engine's current mode

        Returns:
            CheckResult with the decision and the rule responsible for it
            (None when the default decision or a shell safety check applied)
        """
        mode = self._approval_mode if mode is None else ApprovalMode(mode)
        result = self._check(tool_call, mode, self._rules)

        if self.non_interactive and result.decision == PolicyDecision.ASK_USER:
            logger.debug("Non-interactive: %s needs approval, denying", tool_call.name)
            return CheckResult(decision=PolicyDecision.DENY, rule=result.rule)
        return result

    def _check(
        self,
        tool_call: ToolCall,
        mode: ApprovalMode,
        rules: tuple[PolicyRule, ...],
    ) -> CheckResult:
        canonical = canonical_tool_name(tool_call.name, tool_call.server_name)
        args_text = stable_stringify(tool_call.args) if tool_call.args is not None else None

        for rule in rules:
            if self._rule_matches(rule, tool_call, canonical, args_text, mode):
                logger.debug(
                    "Rule %s (%s, priority %s) matched %s",
                    rule.decision.value,
                    rule.source or "<unnamed>",
                    rule.priority,
                    canonical,
                )
                if canonical == SHELL_TOOL_NAME:
                    return self._check_shell(tool_call, mode, rules, rule.decision, rule)
                return CheckResult(decision=rule.decision, rule=rule)

        logger.debug("No rule matched %s, using default %s", canonical, self.default_decision.value)
        if canonical == SHELL_TOOL_NAME and self.default_decision != PolicyDecision.DENY:
            return self._check_shell(tool_call, mode, rules, self.default_decision, None)
        return CheckResult(decision=self.default_decision)

    def _rule_matches(
        self,
        rule: PolicyRule | SafetyCheckerRule,
        tool_call: ToolCall,
        canonical: str,
        args_text: str | None,
        mode: ApprovalMode,
    ) -> bool:
        if not _applies_in_mode(rule.modes, mode):
            return False
        if not tool_name_matches(rule.tool_name, canonical, tool_call.server_name):
            return False
        if rule.args_pattern is not None:
            if args_text is None or not rule.args_pattern.search(args_text):
                return False
        return annotations_match(rule.tool_annotations, tool_call.annotations)

    def _check_shell(
        self,
        tool_call: ToolCall,
        mode: ApprovalMode,
        rules: tuple[PolicyRule, ...],
        decision: PolicyDecision,
        rule: PolicyRule | None,
    ) -> CheckResult:
        """
        Refine a decision for the shell tool.

        A DENY stands. Otherwise compound commands are checked part by part
        (any DENY part denies, any ASK_USER part asks), and output
        redirection turns an ALLOW into ASK_USER unless the rule permits it.
        """
        if decision == PolicyDecision.DENY:
            return CheckResult(decision=decision, rule=rule)

        command = (tool_call.args or {}).get("command")
        if not isinstance(command, str):
            return CheckResult(decision=decision, rule=rule)

        try:
            parsed = parse_command(command)
        except ShellParseError as e:
            logger.debug("Could not parse shell command (%s)", e)
            if mode == ApprovalMode.YOLO:
                return CheckResult(decision=PolicyDecision.ALLOW, rule=rule)
            return CheckResult(decision=PolicyDecision.ASK_USER, rule=rule)

        if parsed.is_compound:
            aggregate = PolicyDecision.ALLOW
            responsible = rule
            for part in parsed.parts:
                sub_call = tool_call.model_copy(update={"args": {**tool_call.args, "command": part}})
                sub_result = self._check(sub_call, mode, rules)
                if sub_result.decision == PolicyDecision.DENY:
                    return sub_result
                if sub_result.decision == PolicyDecision.ASK_USER and aggregate == PolicyDecision.ALLOW:
                    aggregate = PolicyDecision.ASK_USER
                    responsible = sub_result.rule
            return CheckResult(decision=aggregate, rule=responsible)

        if (
            decision == PolicyDecision.ALLOW
            and parsed.redirection
            and not (rule is not None and rule.allow_redirection)
            and mode not in _REDIRECTION_TRUSTED_MODES
        ):
            logger.debug("Shell command redirects output, asking instead of allowing")
            return CheckResult(decision=PolicyDecision.ASK_USER)

        return CheckResult(decision=decision, rule=rule)

    # =========================================================================
    # Collaborator queries
    # =========================================================================

    def matching_checkers(
        self,
        tool_call: ToolCall,
        mode: ApprovalMode | None = None,
    ) -> list[SafetyCheckerRule]:
        """
        Safety checkers that apply to a tool call, highest priority first.

        The engine does not run checkers; this surfaces them to whoever does.
        """
        mode = self._approval_mode if mode is None else ApprovalMode(mode)
        canonical = canonical_tool_name(tool_call.name, tool_call.server_name)
        args_text = stable_stringify(tool_call.args) if tool_call.args is not None else None
        return [
            checker for checker in self._checkers
            if self._rule_matches(checker, tool_call, canonical, args_text, mode)
        ]

    def get_excluded_tools(
        self,
        tool_metadata: Mapping[str, Mapping[str, Any]] | None = None,
        all_tool_names: Iterable[str] | None = None,
    ) -> set[str]:
        """
        Tools that would be denied no matter what arguments they get.

        Only rules without an argument pattern are considered, in priority
        order; the first such rule to cover a tool decides it.

        Args:
            tool_metadata: Annotations per tool name, for annotation rules
            all_tool_names: Known tool names, for wildcard and catch-all rules

        Returns:
            Names of tools a model should not be offered
        """
        tool_metadata = tool_metadata or {}
        names = set(all_tool_names or ()) | set(tool_metadata)
        mode = self._approval_mode
        decided: set[str] = set()
        excluded: set[str] = set()

        for rule in self._rules:
            if rule.args_pattern is not None or not _applies_in_mode(rule.modes, mode):
                continue

            decision = rule.decision
            if self.non_interactive and decision == PolicyDecision.ASK_USER:
                decision = PolicyDecision.DENY

            if rule.tool_name is not None and "*" not in rule.tool_name and not rule.tool_annotations:
                targets = {rule.tool_name}
            else:
                targets = {
                    name for name in names
                    if tool_name_matches(rule.tool_name, name)
                    and annotations_match(rule.tool_annotations, tool_metadata.get(name))
                }

            for name in targets - decided:
                decided.add(name)
                if decision == PolicyDecision.DENY:
                    excluded.add(name)

        return excluded
