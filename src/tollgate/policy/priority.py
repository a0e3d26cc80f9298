"""
Priority algebra for Tollgate.

Every rule carries one composite priority::

    priority = tier + declared_priority / 1000

where ``tier`` identifies the trust level of the rule's source and
``declared_priority`` is an integer in [0, 999] chosen by the policy author.
The largest intra-tier contribution is 0.999, so a rule from a higher tier
always outranks every rule from a lower tier. Authors can reorder rules within
their own tier but can never climb above a more trusted one.

Tiers (lowest to highest trust):
    1. Default   - built-in policies shipped with Tollgate
    2. Extension - policies contributed by extensions
    3. Workspace - policies checked into the current project
    4. User      - the user's own policy directory or --policy paths
    5. Admin     - system-wide administrator policies
"""

import math
from enum import IntEnum

from tollgate.errors import InvalidTierError, PriorityRangeError

MIN_DECLARED_PRIORITY = 0
MAX_DECLARED_PRIORITY = 999
PRIORITY_SCALE = 1000


class PolicyTier(IntEnum):
    """Trust tier of a rule source."""

    DEFAULT = 1
    EXTENSION = 2
    WORKSPACE = 3
    USER = 4
    ADMIN = 5


_TIER_LABELS = {
    PolicyTier.DEFAULT: "Default",
    PolicyTier.EXTENSION: "Extension",
    PolicyTier.WORKSPACE: "Workspace",
    PolicyTier.USER: "User",
    PolicyTier.ADMIN: "Admin",
}


# =============================================================================
# Priorities for rules that do not come from TOML files
# =============================================================================

# Subagents registered at runtime. Sits below the plan-mode catch-all deny
# (Default tier, declared 60 -> 1.060) so plan mode still blocks them.
PRIORITY_SUBAGENT_TOOL = PolicyTier.DEFAULT + 0.05

# "Always allow" answers given interactively; scoped to the workspace tier so
# user and admin policies still win.
ALWAYS_ALLOW_PRIORITY = PolicyTier.WORKSPACE + 0.95

# Settings-derived rules, all in the user tier.
MCP_EXCLUDED_PRIORITY = PolicyTier.USER + 0.9
EXCLUDE_TOOLS_FLAG_PRIORITY = PolicyTier.USER + 0.4
ALLOWED_TOOLS_FLAG_PRIORITY = PolicyTier.USER + 0.3
TRUSTED_MCP_SERVER_PRIORITY = PolicyTier.USER + 0.2
ALLOWED_MCP_SERVER_PRIORITY = PolicyTier.USER + 0.1


def validate_tier(tier: int) -> PolicyTier:
    """
    Coerce an integer into a PolicyTier.

    Raises:
        InvalidTierError: If the value is not a known tier
    """
    if isinstance(tier, bool):
        raise InvalidTierError(tier=tier)
    try:
        return PolicyTier(tier)
    except ValueError as e:
        raise InvalidTierError(tier=tier) from e


def validate_declared_priority(priority: int) -> int:
    """
    Check that an author-specified priority is an integer in [0, 999].

    Values are never clamped: anything outside the range is rejected.

    Raises:
        PriorityRangeError: If the value is not an int or is out of range
    """
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise PriorityRangeError(priority=priority)
    if priority < MIN_DECLARED_PRIORITY or priority > MAX_DECLARED_PRIORITY:
        raise PriorityRangeError(priority=priority)
    return priority


def compose_priority(tier: int, declared_priority: int) -> float:
    """
    Build the composite priority for a rule.

    Args:
        tier: Trust tier of the rule's source
        declared_priority: Author-specified priority in [0, 999]

    Returns:
        ``tier + declared_priority / 1000``

    Example:
        >>> compose_priority(PolicyTier.DEFAULT, 100)
        1.1
    """
    tier = validate_tier(tier)
    declared_priority = validate_declared_priority(declared_priority)
    return int(tier) + declared_priority / PRIORITY_SCALE


def tier_of(priority: float) -> int:
    """Return the tier band a composite priority falls in."""
    return math.floor(priority)


def tier_label(tier: int) -> str:
    """
    Human-readable label for a tier, used in rule sources.

    Unknown tiers fall back to "Default", matching how the loader treats
    directories it cannot classify.
    """
    try:
        return _TIER_LABELS[PolicyTier(tier)]
    except ValueError:
        return _TIER_LABELS[PolicyTier.DEFAULT]
