"""
Pytest configuration and fixtures for Tollgate tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from tollgate.policy.loader import load_policies
from tollgate.policy.priority import PolicyTier
from tollgate.schema import PolicyLoadResult
from tollgate.storage import Storage


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def storage(temp_dir: Path) -> Storage:
    """Storage rooted entirely inside the temporary directory."""
    project = temp_dir / "project"
    project.mkdir()
    return Storage(
        home=temp_dir / "home" / ".tollgate",
        cwd=project,
        system_policies_dir=temp_dir / "system" / "policies",
    )


@pytest.fixture
def write_policy(temp_dir: Path):
    """Write a TOML policy file into a directory (default: temp_dir/policies)."""

    def _write(content: str, name: str = "policy.toml", directory: Path | None = None) -> Path:
        directory = directory or temp_dir / "policies"
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def load_toml(temp_dir: Path):
    """Load TOML content as a single policy file at a given tier."""

    def _load(
        content: str,
        tier: int = PolicyTier.DEFAULT,
        name: str = "test.toml",
    ) -> PolicyLoadResult:
        directory = temp_dir / "load"
        directory.mkdir(exist_ok=True)
        (directory / name).write_text(content, encoding="utf-8")
        return load_policies([directory], lambda _: tier)

    return _load


@pytest.fixture
def sample_policy_toml() -> str:
    """Return a small policy mixing rule kinds."""
    return """
[[rule]]
toolName = "read_file"
decision = "allow"
priority = 100

[[rule]]
toolName = "run_shell_command"
commandPrefix = ["git status", "git log"]
decision = "allow"
priority = 100

[[rule]]
toolName = "run_shell_command"
commandPrefix = "rm -rf"
decision = "deny"
priority = 200
deny_message = "Recursive deletes are not allowed"
"""


@pytest.fixture
def sample_settings_yaml() -> str:
    """Return settings that contribute rules of every kind."""
    return """
tools:
  allowed:
    - "run_shell_command(npm test)"
    - web_fetch
  exclude:
    - write_file
mcp:
  allowed:
    - docs
  excluded:
    - shady
mcp_servers:
  github:
    trust: true
    command: github-mcp
"""
