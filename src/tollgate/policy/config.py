"""
Host wiring for the policy engine.

Turns settings and the on-disk policy directories into a PolicyEngineConfig:

    Admin      /etc/tollgate/policies (skipped if insecure)
    User       ~/.tollgate/policies, or settings.policy_paths
    Workspace  <project>/.tollgate/policies (only once trusted)
    Default    policies shipped with Tollgate

Settings then contribute extra rules in the user tier (excluded servers and
tools, allowed tools, trusted and allowed servers).
"""

import logging
import os
import re
import stat
from dataclasses import dataclass
from pathlib import Path

from tollgate.policy.integrity import PolicyIntegrityManager
from tollgate.policy.loader import SHELL_TOOL_NAME, build_args_patterns, load_policies
from tollgate.policy.priority import (
    ALLOWED_MCP_SERVER_PRIORITY,
    ALLOWED_TOOLS_FLAG_PRIORITY,
    EXCLUDE_TOOLS_FLAG_PRIORITY,
    MCP_EXCLUDED_PRIORITY,
    TRUSTED_MCP_SERVER_PRIORITY,
    PolicyTier,
)
from tollgate.schema import (
    ApprovalMode,
    IntegrityStatus,
    LoadError,
    PolicyDecision,
    PolicyEngineConfig,
    PolicyRule,
    PolicySettings,
)
from tollgate.storage import BUILTIN_POLICIES_DIR, Storage

logger = logging.getLogger(__name__)

WORKSPACE_SCOPE = "workspace"

# Names the shell tool has been known by
SHELL_TOOL_ALIASES = frozenset({SHELL_TOOL_NAME, "ShellTool"})

# "run_shell_command(git status)" in tools.allowed
_LEGACY_TOOL_ARGS = re.compile(r"^([a-zA-Z0-9_-]+)\((.*)\)$")


def _same_path(a: Path | str, b: Path | str) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def get_policy_directories(
    storage: Storage,
    default_policies_dir: Path | str | None = None,
    policy_paths: list[str] | None = None,
    workspace_policies_dir: Path | str | None = None,
) -> list[Path]:
    """
    Policy directories to load, most trusted first.

    Args:
        storage: Resolves the admin and user directories
        default_policies_dir: Built-in policies; defaults to the packaged ones
        policy_paths: User-tier paths replacing the user policy directory
        workspace_policies_dir: Workspace directory, if it has been trusted

    Returns:
        Admin, user (or policy_paths), workspace and default directories
    """
    dirs = [storage.system_policies_dir]

    if policy_paths:
        dirs.extend(Path(p) for p in policy_paths)
    else:
        dirs.append(storage.user_policies_dir)

    if workspace_policies_dir:
        dirs.append(Path(workspace_policies_dir))

    dirs.append(Path(default_policies_dir) if default_policies_dir else BUILTIN_POLICIES_DIR)
    return dirs


def get_policy_tier(
    path: Path | str,
    storage: Storage,
    default_policies_dir: Path | str | None = None,
    workspace_policies_dir: Path | str | None = None,
) -> PolicyTier:
    """
    Trust tier of a policy directory.

    Directories that are not recognised fall back to the default tier.
    """
    if default_policies_dir and _same_path(path, default_policies_dir):
        return PolicyTier.DEFAULT
    if _same_path(path, BUILTIN_POLICIES_DIR):
        return PolicyTier.DEFAULT
    if _same_path(path, storage.user_policies_dir):
        return PolicyTier.USER
    if workspace_policies_dir and _same_path(path, workspace_policies_dir):
        return PolicyTier.WORKSPACE
    if _same_path(path, storage.system_policies_dir):
        return PolicyTier.ADMIN
    return PolicyTier.DEFAULT


def is_directory_secure(path: Path | str) -> tuple[bool, str | None]:
    """
    Check that nobody but an administrator can change a policy directory.

    A missing directory is secure (it contributes nothing).

    Returns:
        Tuple of (secure, reason when not secure)
    """
    try:
        st = Path(path).stat()
    except FileNotFoundError:
        return True, None
    except OSError as e:
        return False, f"Cannot inspect directory: {e}"

    if not stat.S_ISDIR(st.st_mode):
        return False, "Not a directory"
    if st.st_mode & (stat.S_IWGRP | stat.S_IWOTH):
        return False, "Directory is writable by group or others"
    if os.name == "posix" and st.st_uid != 0:
        return False, "Directory is not owned by root"
    return True, None


def _filter_secure_directories(dirs: list[Path], storage: Storage) -> list[Path]:
    secure_dirs = []
    for path in dirs:
        if _same_path(path, storage.system_policies_dir):
            secure, reason = is_directory_secure(path)
            if not secure:
                logger.warning("Security Warning: Skipping system policies from %s: %s", path, reason)
                continue
        secure_dirs.append(path)
    return secure_dirs


def format_policy_error(error: LoadError) -> str:
    """
    Format a load error for logs and terminal output.

    Example:
        [USER] Policy file error in team.toml:
          Invalid rule at index 2
        decision: Input should be 'allow', 'deny' or 'ask_user'
    """
    message = f"[{error.tier.upper()}] Policy file error in {error.file_name}:\n"
    message += f"  {error.message}"
    if error.details:
        message += f"\n{error.details}"
    if error.suggestion:
        message += f"\n  Suggestion: {error.suggestion}"
    return message


def _settings_rules(settings: PolicySettings) -> list[PolicyRule]:
    """Rules contributed by settings, highest priority group first."""
    rules = []

    for server in settings.mcp.excluded:
        rules.append(PolicyRule(
            tool_name=f"{server}__*",
            decision=PolicyDecision.DENY,
            priority=MCP_EXCLUDED_PRIORITY,
            source="Settings (MCP Excluded)",
        ))

    for tool in settings.tools.exclude:
        rules.append(PolicyRule(
            tool_name=tool,
            decision=PolicyDecision.DENY,
            priority=EXCLUDE_TOOLS_FLAG_PRIORITY,
            source="Settings (Tools Excluded)",
        ))

    for tool in settings.tools.allowed:
        rules.extend(_allowed_tool_rules(tool))

    for server, server_settings in settings.mcp_servers.items():
        if server_settings.trust:
            rules.append(PolicyRule(
                tool_name=f"{server}__*",
                decision=PolicyDecision.ALLOW,
                priority=TRUSTED_MCP_SERVER_PRIORITY,
                source="Settings (MCP Trusted)",
            ))

    for server in settings.mcp.allowed:
        rules.append(PolicyRule(
            tool_name=f"{server}__*",
            decision=PolicyDecision.ALLOW,
            priority=ALLOWED_MCP_SERVER_PRIORITY,
            source="Settings (MCP Allowed)",
        ))

    return rules


def _allowed_tool_rules(entry: str) -> list[PolicyRule]:
    """
    Rules for one tools.allowed entry.

    "run_shell_command(git)" allows shell commands starting with "git"; for
    any other tool the parenthesised part is ignored.
    """
    match = _LEGACY_TOOL_ARGS.match(entry)
    raw_name, args = (match.group(1), match.group(2)) if match else (entry, None)
    tool_name = SHELL_TOOL_NAME if raw_name in SHELL_TOOL_ALIASES else raw_name

    patterns: list[str | None] = [None]
    if args is not None and tool_name == SHELL_TOOL_NAME:
        patterns = build_args_patterns(command_prefix=args)

    return [
        PolicyRule(
            tool_name=tool_name,
            args_pattern=re.compile(pattern) if pattern else None,
            decision=PolicyDecision.ALLOW,
            priority=ALLOWED_TOOLS_FLAG_PRIORITY,
            source="Settings (Tools Allowed)",
        )
        for pattern in patterns
    ]


def create_policy_engine_config(
    settings: PolicySettings,
    approval_mode: ApprovalMode | None = None,
    storage: Storage | None = None,
    default_policies_dir: Path | str | None = None,
) -> PolicyEngineConfig:
    """
    Load every policy tier and add the settings-derived rules.

    Load errors are logged and returned on the config; they never stop the
    engine from being built.

    Args:
        settings: Host settings
        approval_mode: Initial mode; defaults to settings.approval_mode
        storage: Filesystem locations; defaults to Storage()
        default_policies_dir: Built-in policies override

    Returns:
        PolicyEngineConfig ready for PolicyEngine.from_config

    Raises:
        PolicyReadError: If a policy directory exists but cannot be read
    """
    storage = storage or Storage()
    policy_dirs = _filter_secure_directories(
        get_policy_directories(
            storage,
            default_policies_dir,
            settings.policy_paths,
            settings.workspace_policies_dir,
        ),
        storage,
    )

    def tier_resolver(path: Path) -> PolicyTier:
        tier = get_policy_tier(path, storage, default_policies_dir, settings.workspace_policies_dir)
        # --policy paths are user tier unless they point at the admin directory
        if any(_same_path(p, path) for p in settings.policy_paths):
            if not _same_path(path, storage.system_policies_dir):
                return PolicyTier.USER
        return tier

    result = load_policies(policy_dirs, tier_resolver)
    for error in result.errors:
        logger.error(format_policy_error(error))

    return PolicyEngineConfig(
        rules=[*result.rules, *_settings_rules(settings)],
        checkers=result.checkers,
        default_decision=PolicyDecision.ASK_USER,
        approval_mode=approval_mode or settings.approval_mode,
        non_interactive=settings.non_interactive,
        errors=result.errors,
    )


# =============================================================================
# Workspace trust
# =============================================================================


@dataclass(frozen=True)
class PolicyUpdateConfirmationRequest:
    """Ask the user to review new or changed workspace policies."""

    scope: str
    identifier: str
    policy_dir: Path
    new_hash: str


@dataclass(frozen=True)
class WorkspacePolicyState:
    """
    Outcome of resolving the workspace tier.

    Attributes:
        workspace_policies_dir: Directory to load, if it may be trusted now
        confirmation_request: Set when the user must review the policies first
    """

    workspace_policies_dir: Path | None = None
    confirmation_request: PolicyUpdateConfirmationRequest | None = None


def resolve_workspace_policy_state(
    cwd: Path | str,
    trusted_folder: bool,
    interactive: bool,
    storage: Storage | None = None,
    integrity_manager: PolicyIntegrityManager | None = None,
    auto_accept: bool = True,
) -> WorkspacePolicyState:
    """
    Decide whether the project's policy directory can be loaded.

    - Untrusted folders and the home directory never load workspace policies
    - MATCH: load
    - NEW with no files: nothing to load
    - Otherwise, interactive without auto-accept: ask for confirmation
    - Otherwise: accept the new hash and load, with a warning

    Raises:
        IntegrityHashError: If the policy directory cannot be read
        IntegrityStoreWriteError: If an automatic accept cannot be saved
    """
    if not trusted_folder:
        return WorkspacePolicyState()

    cwd = Path(cwd)
    storage = storage or Storage(cwd=cwd)
    if storage.is_workspace_home_dir():
        return WorkspacePolicyState()

    integrity_manager = integrity_manager or PolicyIntegrityManager(storage.integrity_store_path)
    policy_dir = storage.workspace_policies_dir
    identifier = str(cwd)
    result = integrity_manager.check_integrity(WORKSPACE_SCOPE, identifier, policy_dir)

    if result.status == IntegrityStatus.MATCH:
        return WorkspacePolicyState(workspace_policies_dir=policy_dir)

    if result.status == IntegrityStatus.NEW and result.file_count == 0:
        return WorkspacePolicyState()

    if interactive and not auto_accept:
        return WorkspacePolicyState(
            confirmation_request=PolicyUpdateConfirmationRequest(
                scope=WORKSPACE_SCOPE,
                identifier=identifier,
                policy_dir=policy_dir,
                new_hash=result.hash,
            )
        )

    integrity_manager.accept_integrity(WORKSPACE_SCOPE, identifier, result.hash)
    logger.warning("Workspace policies changed or are new. Automatically accepting and loading them.")
    return WorkspacePolicyState(workspace_policies_dir=policy_dir)
