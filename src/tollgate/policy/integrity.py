"""
Policy integrity checks for Tollgate.

A policy directory that lives inside a project (the workspace tier) can change
under the user's feet, e.g. after a ``git pull``. Before such a directory is
trusted as a rule source, its contents are hashed and compared with the last
hash the user explicitly accepted.

Store format (one JSON object)::

    {
      "workspace:/home/me/project": "3f9a...e1",
      "extension:my-extension": "0b12...9c"
    }

Reads never fail: a missing or malformed store counts as empty, so every
directory is simply NEW. Writes always raise on failure, because losing an
accepted baseline silently would make the next check report NEW again.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path

from tollgate.errors import IntegrityHashError, IntegrityStoreWriteError, PolicyReadError
from tollgate.filelock import locked_file
from tollgate.policy.loader import read_policy_files
from tollgate.schema import IntegrityResult, IntegrityStatus

logger = logging.getLogger(__name__)


def integrity_key(scope: str, identifier: str) -> str:
    """Key under which a baseline is stored."""
    return f"{scope}:{identifier}"


def calculate_integrity_hash(policy_dir: Path | str) -> tuple[str, int]:
    """
    Hash the policy files of a directory.

    Files are the ones the loader would read, sorted by their path relative
    to ``policy_dir`` (POSIX separators). Each contributes its relative path,
    a NUL byte, its content and another NUL byte, so renames and content
    changes both alter the hash while listing order does not.

    Args:
        policy_dir: Directory (or single policy file) to hash

    Returns:
        Tuple of (lowercase hex SHA-256, number of files hashed)

    Raises:
        IntegrityHashError: If the directory cannot be read
    """
    policy_dir = Path(policy_dir)
    try:
        files = read_policy_files(policy_dir)
    except PolicyReadError as e:
        raise IntegrityHashError(
            policy_dir=str(policy_dir),
            underlying_error=e.underlying_error,
        ) from e

    base = policy_dir if policy_dir.is_dir() else policy_dir.parent
    entries = sorted(
        (policy_file.path.relative_to(base).as_posix(), policy_file.content)
        for policy_file in files
    )

    digest = hashlib.sha256()
    for relative_path, content in entries:
        digest.update(relative_path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(content)
        digest.update(b"\0")

    return digest.hexdigest(), len(entries)


class PolicyIntegrityManager:
    """
    Compares policy directories against accepted baselines.

    Usage:
        manager = PolicyIntegrityManager(storage.integrity_store_path)
        result = manager.check_integrity("workspace", str(cwd), policy_dir)
        if result.status != IntegrityStatus.MATCH:
            # show the user what changed, then
            manager.accept_integrity("workspace", str(cwd), result.hash)
    """

    def __init__(self, store_path: Path | str) -> None:
        self.store_path = Path(store_path)

    def check_integrity(
        self,
        scope: str,
        identifier: str,
        policy_dir: Path | str,
    ) -> IntegrityResult:
        """
        Compare a directory's current hash with its accepted baseline.

        Never writes to the store.

        Args:
            scope: Kind of policy source, e.g. "workspace"
            identifier: Which source within the scope, e.g. the project path
            policy_dir: Directory to hash

        Returns:
            IntegrityResult with MATCH, MISMATCH or NEW

        Raises:
            IntegrityHashError: If the directory cannot be read
        """
        current_hash, file_count = calculate_integrity_hash(policy_dir)
        stored_hash = self._load().get(integrity_key(scope, identifier))

        if stored_hash is None:
            status = IntegrityStatus.NEW
        elif stored_hash == current_hash:
            status = IntegrityStatus.MATCH
        else:
            status = IntegrityStatus.MISMATCH

        logger.debug("Integrity %s for %s:%s (%d files)", status.value, scope, identifier, file_count)
        return IntegrityResult(status=status, hash=current_hash, file_count=file_count)

    def accept_integrity(self, scope: str, identifier: str, hash: str) -> None:
        """
        Record a hash as the accepted baseline for a policy source.

        The store is read, updated and rewritten atomically while holding an
        exclusive lock on ``<store>.lock``, shared across threads and
        processes, so concurrent accepts for different keys are all kept.

        Raises:
            IntegrityStoreWriteError: If the store cannot be locked or written
        """
        try:
            with locked_file(self.store_path):
                data = self._load()
                data[integrity_key(scope, identifier)] = hash
                self._save(data)
        except OSError as e:
            raise IntegrityStoreWriteError(
                store_path=str(self.store_path),
                underlying_error=str(e),
            ) from e

    def _load(self) -> dict[str, str]:
        try:
            content = self.store_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read policy integrity store %s: %s", self.store_path, e)
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Policy integrity store %s is not valid JSON: %s", self.store_path, e)
            return {}

        if not isinstance(data, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in data.items()
        ):
            logger.warning("Policy integrity store %s has an unexpected shape, ignoring it", self.store_path)
            return {}

        return data

    def _save(self, data: dict[str, str]) -> None:
        temp_path = None
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)

            # Atomic write: write to temp file, then rename
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.store_path.parent,
                prefix=f".{self.store_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                temp_path = Path(f.name)
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.store_path)
        except OSError as e:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise IntegrityStoreWriteError(
                store_path=str(self.store_path),
                underlying_error=str(e),
            ) from e
