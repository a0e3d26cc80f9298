"""
Policy module for Tollgate.

Key concepts:
    - PolicyRule: One compiled rule (tool match, decision, composite priority)
    - load_policies: Compiles TOML policy files into rules, collecting errors
    - PolicyEngine: Picks the highest-priority matching rule for a tool call
    - PolicyIntegrityManager: Detects unreviewed changes to policy directories

The policy engine is the security boundary of Tollgate. It must be:
    - Fail-closed: When nothing matches, the user is asked (or the call denied)
    - Predictable: Same inputs always produce same decisions
    - Auditable: Every decision names the rule and file that produced it
"""

from tollgate.policy.config import (
    PolicyUpdateConfirmationRequest,
    WorkspacePolicyState,
    create_policy_engine_config,
    format_policy_error,
    get_policy_directories,
    get_policy_tier,
    is_directory_secure,
    resolve_workspace_policy_state,
)
from tollgate.policy.engine import PolicyEngine, stable_stringify
from tollgate.policy.integrity import PolicyIntegrityManager, calculate_integrity_hash
from tollgate.policy.loader import build_args_patterns, load_policies, read_policy_files
from tollgate.policy.priority import PolicyTier, compose_priority
from tollgate.policy.updater import (
    PolicyUpdate,
    apply_policy_update,
    is_safe_pattern,
    persist_policy_update,
    register_subagent,
)

__all__ = [
    "PolicyEngine",
    "PolicyIntegrityManager",
    "PolicyTier",
    "PolicyUpdate",
    "PolicyUpdateConfirmationRequest",
    "WorkspacePolicyState",
    "apply_policy_update",
    "build_args_patterns",
    "calculate_integrity_hash",
    "compose_priority",
    "create_policy_engine_config",
    "format_policy_error",
    "get_policy_directories",
    "get_policy_tier",
    "is_directory_secure",
    "is_safe_pattern",
    "load_policies",
    "persist_policy_update",
    "read_policy_files",
    "register_subagent",
    "resolve_workspace_policy_state",
    "stable_stringify",
]
