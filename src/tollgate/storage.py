"""Filesystem locations used by Tollgate."""

import os
from pathlib import Path

TOLLGATE_DIR_NAME = ".tollgate"
POLICIES_DIR_NAME = "policies"
INTEGRITY_STORE_FILENAME = "policy_integrity.json"
SETTINGS_FILENAME = "settings.yaml"
AUTO_SAVED_POLICY_FILENAME = "auto-saved.toml"

HOME_ENV_VAR = "TOLLGATE_HOME"
SYSTEM_POLICIES_ENV_VAR = "TOLLGATE_SYSTEM_POLICIES_DIR"
DEFAULT_SYSTEM_POLICIES_DIR = Path("/etc/tollgate/policies")

# Built-in policies shipped inside the package
BUILTIN_POLICIES_DIR = Path(__file__).parent / "policies"


class Storage:
    """
    Resolves where policies, settings and integrity data live.

    Attributes:
        home: User-level Tollgate directory (``$TOLLGATE_HOME`` or ~/.tollgate)
        cwd: Working directory the workspace tier is resolved against
    """

    def __init__(
        self,
        home: Path | str | None = None,
        cwd: Path | str | None = None,
        system_policies_dir: Path | str | None = None,
    ) -> None:
        if home is None:
            home = os.environ.get(HOME_ENV_VAR) or Path.home() / TOLLGATE_DIR_NAME
        if system_policies_dir is None:
            system_policies_dir = os.environ.get(SYSTEM_POLICIES_ENV_VAR) or DEFAULT_SYSTEM_POLICIES_DIR
        self.home = Path(home).expanduser()
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._system_policies_dir = Path(system_policies_dir)

    @property
    def user_policies_dir(self) -> Path:
        return self.home / POLICIES_DIR_NAME

    @property
    def system_policies_dir(self) -> Path:
        """Administrator policies; highest tier."""
        return self._system_policies_dir

    @property
    def workspace_policies_dir(self) -> Path:
        return self.cwd / TOLLGATE_DIR_NAME / POLICIES_DIR_NAME

    @property
    def auto_saved_policy_path(self) -> Path:
        """Workspace policy file that confirmed "always allow" answers are saved to."""
        return self.workspace_policies_dir / AUTO_SAVED_POLICY_FILENAME

    @property
    def integrity_store_path(self) -> Path:
        return self.home / INTEGRITY_STORE_FILENAME

    @property
    def settings_path(self) -> Path:
        return self.home / SETTINGS_FILENAME

    def is_workspace_home_dir(self) -> bool:
        """
        Whether the workspace is the user's own home directory.

        In that case the workspace policy directory is the user policy
        directory itself, so it is not loaded a second time as a workspace.
        """
        try:
            return self.cwd.resolve() == self.home.parent.resolve()
        except OSError:
            return False
