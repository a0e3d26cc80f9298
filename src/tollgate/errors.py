"""
Exception hierarchy for Tollgate.

All Tollgate exceptions inherit from TollgateError, allowing callers to catch
all Tollgate-specific exceptions with a single except clause.

Exception Categories:
    - PolicyReadError: A policy path could not be read (environment problem)
    - PolicyUpdateError: A runtime rule update was rejected
    - PriorityRangeError / InvalidTierError: Priority algebra misuse
    - SettingsError: Invalid settings file
    - IntegrityError: Integrity hashing or baseline persistence failed

Configuration *content* problems (bad TOML, schema violations, invalid
patterns) are never raised. The loader reports them as LoadError values.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Policy errors: 1xxx
ERROR_POLICY_READ = 1001
ERROR_POLICY_UPDATE_INVALID = 1002
ERROR_PRIORITY_OUT_OF_RANGE = 1003
ERROR_TIER_INVALID = 1004
ERROR_POLICY_PERSIST = 1005

# Settings errors: 2xxx
ERROR_SETTINGS_INVALID = 2001
ERROR_SETTINGS_NOT_FOUND = 2002

# Integrity errors: 3xxx
ERROR_INTEGRITY_HASH = 3001
ERROR_INTEGRITY_STORE_WRITE = 3002


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class TollgateError(Exception):
    """
    Base exception for all Tollgate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyError(TollgateError):
    """Base class for errors raised while building or updating a rule set."""


@dataclass
class PolicyReadError(PolicyError):
    """
    Raised when a policy path exists but cannot be inspected or read.

    A missing path is not an error (it contributes zero rules); anything else
    points at the environment rather than the policy content.
    """

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to read policy path {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_POLICY_READ
        if not self.suggestion:
            self.suggestion = "Check that the policy directory and its files are readable"
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class PolicyUpdateError(PolicyError):
    """Raised when a runtime "always allow" update carries an unusable pattern."""

    tool: str = ""
    pattern: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid or unsafe regular expression for tool {self.tool}: {self.pattern}"
        if self.code == 0:
            self.code = ERROR_POLICY_UPDATE_INVALID
        self.context.update({
            "tool": self.tool,
            "pattern": self.pattern,
            "underlying_error": self.underlying_error,
        })


@dataclass
class PriorityRangeError(PolicyError):
    """Raised when a declared intra-tier priority is not an integer in [0, 999]."""

    priority: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Declared priority must be an integer in [0, 999], got {self.priority!r}"
        if self.code == 0:
            self.code = ERROR_PRIORITY_OUT_OF_RANGE
        self.context["priority"] = self.priority


@dataclass
class InvalidTierError(PolicyError):
    """Raised when a trust tier is not one of the known PolicyTier values."""

    tier: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown policy tier: {self.tier!r}"
        if self.code == 0:
            self.code = ERROR_TIER_INVALID
        self.context["tier"] = self.tier


@dataclass
class PolicyPersistError(PolicyError):
    """Raised when an "always allow" rule cannot be saved to its policy file."""

    path: str = ""
    tool: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to persist policy for {self.tool}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_POLICY_PERSIST
        if not self.suggestion:
            self.suggestion = f"Check that {self.path} is writable"
        self.context.update({
            "path": self.path,
            "tool": self.tool,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Settings Errors
# =============================================================================


@dataclass
class SettingsError(TollgateError):
    """Raised when a settings file is not valid YAML or fails validation."""

    path: str = ""
    validation_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid settings in {self.path}: {self.validation_error}"
        if self.code == 0:
            self.code = ERROR_SETTINGS_INVALID
        self.context.update({
            "path": self.path,
            "validation_error": self.validation_error,
        })


@dataclass
class SettingsNotFoundError(SettingsError):
    """Raised when an explicitly requested settings file does not exist."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Settings file not found: {self.path}"
        if self.code == 0:
            self.code = ERROR_SETTINGS_NOT_FOUND
        super().__post_init__()


# =============================================================================
# Integrity Errors
# =============================================================================


@dataclass
class IntegrityError(TollgateError):
    """
    Base class for integrity manager errors.

    Attributes:
        underlying_error: The OS-level error text
    """

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["underlying_error"] = self.underlying_error


@dataclass
class IntegrityHashError(IntegrityError):
    """Raised when the policy files of a directory cannot be hashed."""

    policy_dir: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to calculate policy integrity hash for {self.policy_dir}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INTEGRITY_HASH
        super().__post_init__()
        self.context["policy_dir"] = self.policy_dir


@dataclass
class IntegrityStoreWriteError(IntegrityError):
    """Raised when an accepted baseline cannot be persisted."""

    store_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to save policy integrity data to {self.store_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INTEGRITY_STORE_WRITE
        if not self.suggestion:
            self.suggestion = "Check that the integrity store directory is writable"
        super().__post_init__()
        self.context["store_path"] = self.store_path
