"""
CLI entry point for Tollgate.

A thin diagnostic surface over the policy engine: it loads the same tiers a
host would, then answers questions about them.

Commands:
    check             Decide a single tool call
    rules             List the effective rules, highest priority first
    validate          Load policy files and report every problem found
    integrity check   Compare a policy directory with its accepted hash
    integrity accept  Accept a policy directory's current contents

Architecture Note:
    The CLI only parses arguments and formats output. Everything it does is
    available programmatically through tollgate.policy.
"""

import json
import logging
import re
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from tollgate import __version__
from tollgate.errors import TollgateError
from tollgate.policy import (
    PolicyEngine,
    PolicyIntegrityManager,
    create_policy_engine_config,
    format_policy_error,
    load_policies,
    resolve_workspace_policy_state,
)
from tollgate.policy.priority import PolicyTier, tier_label
from tollgate.schema import (
    ApprovalMode,
    IntegrityStatus,
    PolicyDecision,
    PolicySettings,
    ToolCall,
    load_settings,
)
from tollgate.storage import Storage

# Initialize Typer app with metadata
app = typer.Typer(
    name="tollgate",
    help="Inspect and test tool-call authorization policies.",
    add_completion=False,
    no_args_is_help=True,
)

integrity_app = typer.Typer(
    name="integrity",
    help="Check and accept policy directory contents.",
    no_args_is_help=True,
)
app.add_typer(integrity_app, name="integrity")

# Rich console for formatted output
console = Console()
err_console = Console(stderr=True)

_DECISION_STYLES = {
    PolicyDecision.ALLOW: "[green]allow[/green]",
    PolicyDecision.DENY: "[red]deny[/red]",
    PolicyDecision.ASK_USER: "[yellow]ask_user[/yellow]",
}

_STATUS_STYLES = {
    IntegrityStatus.MATCH: "[green]MATCH[/green]",
    IntegrityStatus.MISMATCH: "[red]MISMATCH[/red]",
    IntegrityStatus.NEW: "[yellow]NEW[/yellow]",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]tollgate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Log rule matching and loading details to stderr.",
        ),
    ] = False,
) -> None:
    """
    Tollgate - Authorization policies for agent tool calls.

    Decide whether each tool call is allowed, denied or needs confirmation,
    from layered TOML policy files.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
            force=True,
        )


# =============================================================================
# Shared helpers
# =============================================================================


def _output_json(output: dict[str, Any]) -> None:
    print(json.dumps(output, indent=2, default=str))


def _output_json_error(error: Exception) -> None:
    """Output an error in JSON format."""
    if isinstance(error, TollgateError):
        output = {"error": True, **error.to_dict()}
    else:
        output = {"error": True, "error_type": type(error).__name__, "message": str(error)}
    _output_json(output)


def _fail(error: Exception, json_output: bool) -> None:
    if json_output:
        _output_json_error(error)
    else:
        console.print(f"[red]Error: {escape(str(error))}[/red]")
    raise typer.Exit(code=1)


def _load_settings(settings_path: Path | None, storage: Storage) -> PolicySettings:
    if settings_path is not None:
        return load_settings(settings_path)
    if storage.settings_path.exists():
        return load_settings(storage.settings_path)
    return PolicySettings()


def _build_engine(
    settings_path: Path | None,
    policy_paths: list[Path] | None,
    mode: ApprovalMode | None,
    trust_workspace: bool,
    non_interactive: bool = False,
) -> PolicyEngine:
    storage = Storage()
    settings = _load_settings(settings_path, storage)

    updates: dict[str, Any] = {}
    if policy_paths:
        updates["policy_paths"] = [str(p) for p in policy_paths]
    if non_interactive:
        updates["non_interactive"] = True
    if trust_workspace:
        state = resolve_workspace_policy_state(
            cwd=storage.cwd,
            trusted_folder=True,
            interactive=True,
            storage=storage,
            auto_accept=False,
        )
        if state.confirmation_request is not None:
            err_console.print(
                "[yellow]Workspace policies are new or changed and were not loaded. "
                "Review them and run 'tollgate integrity accept'.[/yellow]"
            )
        elif state.workspace_policies_dir is not None:
            updates["workspace_policies_dir"] = str(state.workspace_policies_dir)
    if updates:
        settings = settings.model_copy(update=updates)

    config = create_policy_engine_config(settings, approval_mode=mode, storage=storage)
    return PolicyEngine.from_config(config)


def _parse_annotation(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise typer.BadParameter(f"Expected KEY=VALUE, got {raw!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def _rule_pattern(pattern: re.Pattern[str] | None) -> str:
    return pattern.pattern if pattern is not None else ""


SettingsOption = Annotated[
    Optional[Path],
    typer.Option(
        "--settings",
        "-s",
        help="Settings YAML file. Defaults to settings.yaml in TOLLGATE_HOME.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
PolicyOption = Annotated[
    Optional[list[Path]],
    typer.Option(
        "--policy",
        "-p",
        help="User-tier policy file or directory (repeatable). Replaces the user policy directory.",
        resolve_path=True,
    ),
]
ModeOption = Annotated[
    Optional[ApprovalMode],
    typer.Option("--mode", "-m", help="Approval mode. Defaults to the settings value."),
]
TrustWorkspaceOption = Annotated[
    bool,
    typer.Option(
        "--trust-workspace",
        help="Load this directory's workspace policies if their hash was accepted.",
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output in JSON format."),
]


# =============================================================================
# Commands
# =============================================================================


@app.command()
def check(
    tool_name: Annotated[str, typer.Argument(help="Tool name, e.g. read_file or github__list_issues.")],
    args: Annotated[
        Optional[str],
        typer.Option("--args", "-a", help='Tool arguments as a JSON object, e.g. \'{"command": "ls"}\'.'),
    ] = None,
    server: Annotated[
        Optional[str],
        typer.Option("--server", help="Server the tool comes from."),
    ] = None,
    annotation: Annotated[
        Optional[list[str]],
        typer.Option("--annotation", help="Tool annotation as KEY=VALUE (repeatable)."),
    ] = None,
    non_interactive: Annotated[
        bool,
        typer.Option("--non-interactive", help="Treat ask_user as deny."),
    ] = False,
    settings_path: SettingsOption = None,
    policy_paths: PolicyOption = None,
    mode: ModeOption = None,
    trust_workspace: TrustWorkspaceOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Decide a single tool call.

    Example:
        $ tollgate check run_shell_command --args '{"command": "git status"}'
    """
    try:
        call_args = json.loads(args) if args is not None else None
        if call_args is not None and not isinstance(call_args, dict):
            raise typer.BadParameter("--args must be a JSON object")
        annotations = dict(_parse_annotation(a) for a in annotation) if annotation else None
        tool_call = ToolCall(
            name=tool_name,
            args=call_args,
            server_name=server,
            annotations=annotations,
        )
        engine = _build_engine(settings_path, policy_paths, mode, trust_workspace, non_interactive)
        result = engine.check(tool_call)
    except (typer.BadParameter, typer.Exit):
        raise
    except (TollgateError, ValueError) as e:
        _fail(e, json_output)

    if json_output:
        _output_json({
            "tool": tool_name,
            "server": server,
            "mode": engine.approval_mode.value,
            "decision": result.decision.value,
            "source": result.source,
            "priority": result.rule.priority if result.rule else None,
            "deny_message": result.deny_message,
        })
        return

    console.print(f"Decision: {_DECISION_STYLES[result.decision]}")
    console.print(f"[dim]Source: {result.source}[/dim]")
    if result.rule is not None:
        console.print(f"[dim]Priority: {result.rule.priority:.3f}[/dim]")
    if result.deny_message:
        console.print(f"Message: {escape(result.deny_message)}")


@app.command()
def rules(
    settings_path: SettingsOption = None,
    policy_paths: PolicyOption = None,
    mode: ModeOption = None,
    trust_workspace: TrustWorkspaceOption = False,
    all_modes: Annotated[
        bool,
        typer.Option("--all-modes", help="Include rules scoped to other modes."),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """
    List the effective rules, highest priority first.

    Example:
        $ tollgate rules --mode plan
    """
    try:
        engine = _build_engine(settings_path, policy_paths, mode, trust_workspace)
    except TollgateError as e:
        _fail(e, json_output)

    current = engine.approval_mode
    shown = [
        rule for rule in engine.rules
        if all_modes or not rule.modes or current in rule.modes
    ]

    if json_output:
        _output_json({
            "mode": current.value,
            "count": len(shown),
            "rules": [
                {
                    "tool_name": rule.tool_name,
                    "decision": rule.decision.value,
                    "priority": rule.priority,
                    "args_pattern": _rule_pattern(rule.args_pattern),
                    "modes": [m.value for m in rule.modes] if rule.modes else None,
                    "tool_annotations": rule.tool_annotations,
                    "source": rule.source,
                }
                for rule in shown
            ],
        })
        return

    if not shown:
        console.print("[dim]No rules found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Priority", justify="right")
    table.add_column("Decision", width=9)
    table.add_column("Tool", style="cyan")
    table.add_column("Args pattern")
    table.add_column("Modes", style="dim")
    table.add_column("Source", style="dim")

    for rule in shown:
        table.add_row(
            f"{rule.priority:.3f}",
            _DECISION_STYLES[rule.decision],
            rule.tool_name or "*",
            escape(_rule_pattern(rule.args_pattern)),
            ", ".join(m.value for m in rule.modes) if rule.modes else "all",
            rule.source,
        )

    console.print(f"[bold]Rules for mode {current.value} ({len(shown)})[/bold]")
    console.print(table)


@app.command()
def validate(
    paths: Annotated[
        list[Path],
        typer.Argument(help="Policy files or directories to validate.", resolve_path=True),
    ],
    tier: Annotated[
        int,
        typer.Option("--tier", "-t", min=1, max=5, help="Tier to load the files at (1=Default ... 5=Admin)."),
    ] = int(PolicyTier.USER),
    json_output: JsonOption = False,
) -> None:
    """
    Load policy files and report every problem found.

    Exits with status 1 if any file or rule was rejected.

    Example:
        $ tollgate validate .tollgate/policies
    """
    try:
        result = load_policies(paths, lambda _: tier)
    except TollgateError as e:
        _fail(e, json_output)

    if json_output:
        _output_json({
            "valid": not result.errors,
            "tier": tier_label(tier),
            "rules": len(result.rules),
            "checkers": len(result.checkers),
            "errors": [error.model_dump(mode="json") for error in result.errors],
        })
    else:
        for error in result.errors:
            console.print(f"[red]{escape(format_policy_error(error))}[/red]", highlight=False)
            console.print()
        summary = f"{len(result.rules)} rules, {len(result.checkers)} checkers"
        if result.errors:
            console.print(f"[red]✗[/red] {summary}, {len(result.errors)} errors")
        else:
            console.print(f"[green]✓[/green] {summary}, no errors")

    if result.errors:
        raise typer.Exit(code=1)


# =============================================================================
# Integrity Subcommand Group
# =============================================================================


def _integrity_target(policy_dir: Path | None, identifier: str | None) -> tuple[Storage, Path, str]:
    storage = Storage()
    return (
        storage,
        policy_dir or storage.workspace_policies_dir,
        identifier or str(storage.cwd),
    )


PolicyDirArgument = Annotated[
    Optional[Path],
    typer.Argument(
        help="Policy directory. Defaults to .tollgate/policies in the current directory.",
        resolve_path=True,
    ),
]
ScopeOption = Annotated[str, typer.Option("--scope", help="Integrity scope.")]
IdentifierOption = Annotated[
    Optional[str],
    typer.Option("--id", help="Identifier within the scope. Defaults to the current directory."),
]


@integrity_app.command("check")
def integrity_check(
    policy_dir: PolicyDirArgument = None,
    scope: ScopeOption = "workspace",
    identifier: IdentifierOption = None,
    json_output: JsonOption = False,
) -> None:
    """Compare a policy directory with its accepted hash."""
    storage, policy_dir, identifier = _integrity_target(policy_dir, identifier)
    manager = PolicyIntegrityManager(storage.integrity_store_path)

    try:
        result = manager.check_integrity(scope, identifier, policy_dir)
    except TollgateError as e:
        _fail(e, json_output)

    if json_output:
        _output_json({
            "scope": scope,
            "identifier": identifier,
            "policy_dir": str(policy_dir),
            **result.model_dump(mode="json"),
        })
    else:
        console.print(f"Status: {_STATUS_STYLES[result.status]}")
        console.print(f"[dim]Files: {result.file_count}[/dim]")
        console.print(f"[dim]Hash: {result.hash}[/dim]")

    if result.status == IntegrityStatus.MISMATCH:
        raise typer.Exit(code=1)


@integrity_app.command("accept")
def integrity_accept(
    policy_dir: PolicyDirArgument = None,
    scope: ScopeOption = "workspace",
    identifier: IdentifierOption = None,
    json_output: JsonOption = False,
) -> None:
    """Accept a policy directory's current contents as trusted."""
    storage, policy_dir, identifier = _integrity_target(policy_dir, identifier)
    manager = PolicyIntegrityManager(storage.integrity_store_path)

    try:
        result = manager.check_integrity(scope, identifier, policy_dir)
        manager.accept_integrity(scope, identifier, result.hash)
    except TollgateError as e:
        _fail(e, json_output)

    if json_output:
        _output_json({
            "accepted": True,
            "scope": scope,
            "identifier": identifier,
            "hash": result.hash,
            "file_count": result.file_count,
        })
    else:
        console.print(f"[green]✓[/green] Accepted {result.file_count} policy files for {scope}:{identifier}")


if __name__ == "__main__":
    app()
