"""
State store for last-applied resource state.

This module provides joblib-based persistence of the StateSnapshot with
optimistic concurrency: every entry carries a version, and a commit only
succeeds when the caller's expected version matches the stored one.
"""

import fcntl
import joblib
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

from ..errors import StateEntryNotFoundError, StateFormatError, VersionConflictError
from ..models import STATE_FORMAT_VERSION, StateEntry, StateSnapshot

logger = logging.getLogger(__name__)


class StateManager:
    """
    Persistent store of StateEntries keyed by resource id.

    Features:
    - Load/save StateSnapshot using joblib with atomic temp-file renames
    - Thread-safe operations, and an exclusive lock file shared across processes
    - Per-entry compare-and-swap on the version field
    - Backups and restore
    """

    def __init__(self, state_file: Path, backup_dir: Optional[Path] = None):
        """
        Initialize StateManager.

        Args:
            state_file: Path to the state file
            backup_dir: Optional directory for state backups
        """
        self.state_file = Path(state_file)
        self.lock_file = self.state_file.with_suffix(".lock")

        # Setup backup directory
        if backup_dir:
            self.backup_dir = Path(backup_dir)
        else:
            self.backup_dir = self.state_file.parent / "backups"

        self._lock = threading.RLock()
        self._snapshot = self._read_state()
        logger.info(f"StateManager initialized with state file: {state_file}")

    def _read_state(self) -> StateSnapshot:
        """Read the snapshot from disk, or start an empty one."""
        if not self.state_file.exists():
            logger.info("State file does not exist, starting with empty state")
            return StateSnapshot()
        return self._load_file(self.state_file)

    def _load_file(self, path: Path) -> StateSnapshot:
        try:
            data = joblib.load(path)
        except Exception as e:
            raise StateFormatError(f"Cannot read state file {path}: {e}") from e

        if not isinstance(data, dict) or "state" not in data:
            raise StateFormatError(f"State file {path} has no state payload")

        format_version = data.get("format_version")
        if not isinstance(format_version, int) or format_version > STATE_FORMAT_VERSION:
            raise StateFormatError(
                f"State file {path} uses format version {format_version}; "
                f"this Keystone reads up to version {STATE_FORMAT_VERSION}"
            )

        snapshot = StateSnapshot.model_validate(data["state"])
        logger.debug(f"Loaded state serial {snapshot.serial} with {len(snapshot.resources)} resources")
        return snapshot

    def _save_state(self) -> None:
        """Save state to file."""
        # Ensure parent directory exists
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "format_version": STATE_FORMAT_VERSION,
            "state": self._snapshot.model_dump(),
        }

        # Write to temporary file first, then rename (atomic operation)
        temp_file = self.state_file.with_suffix(".tmp")
        joblib.dump(data, temp_file)
        temp_file.replace(self.state_file)
        logger.debug(f"Saved state serial {self._snapshot.serial}")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the thread lock and the inter-process lock file together."""
        with self._lock:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_file, "a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _refresh(self) -> None:
        """Pick up commits made through other StateManager instances."""
        if self.state_file.exists():
            self._snapshot = self._load_file(self.state_file)

    # =========================================================================
    # Store operations
    # =========================================================================

    def load(self) -> Dict[str, StateEntry]:
        """
        Load every StateEntry from the persisted state.

        Returns:
            Copies of the entries keyed by resource id
        """
        with self._lock:
            self._refresh()
            return {
                resource_id: entry.model_copy(deep=True)
                for resource_id, entry in self._snapshot.resources.items()
            }

    def get(self, resource_id: str) -> StateEntry:
        """
        Get the entry of one resource.

        Raises:
            StateEntryNotFoundError: If the resource has no entry
        """
        with self._lock:
            entry = self._snapshot.resources.get(resource_id)
            if entry is None:
                raise StateEntryNotFoundError(resource_id)
            return entry.model_copy(deep=True)

    def version(self, resource_id: str) -> int:
        """Currently persisted version of a resource; 0 when it has no entry."""
        with self._lock:
            self._refresh()
            entry = self._snapshot.resources.get(resource_id)
            return entry.version if entry else 0

    def commit_apply(
        self, resource_id: str, entry: Optional[StateEntry], expected_version: int
    ) -> Optional[StateEntry]:
        """
        Atomically replace (or remove) the entry of one resource.

        Args:
            resource_id: Resource being committed
            entry: New entry, or None to remove the resource from state
            expected_version: Version the caller last observed; 0 when absent

        Returns:
            The stored entry with its new version, or None after a removal

        Raises:
            VersionConflictError: If the stored version differs from expected_version
        """
        with self._exclusive():
            self._refresh()
            current = self._snapshot.resources.get(resource_id)
            actual_version = current.version if current else 0
            if actual_version != expected_version:
                raise VersionConflictError(resource_id, expected_version, actual_version)

            stored = None
            if entry is None:
                self._snapshot.resources.pop(resource_id, None)
                logger.debug(f"Removed {resource_id} from state")
            else:
                stored = entry.model_copy(
                    update={
                        "resource_id": resource_id,
                        "version": expected_version + 1,
                        "updated_at": datetime.now(),
                    },
                    deep=True,
                )
                self._snapshot.resources[resource_id] = stored
                logger.debug(f"Committed {resource_id} at version {stored.version}")

            self._snapshot.serial += 1
            self._snapshot.update_timestamp()
            self._save_state()
            return stored.model_copy(deep=True) if stored else None

    def set_outputs(self, outputs: Dict[str, Any], sensitive: Iterable[str] = ()) -> None:
        """Persist the document outputs of the last apply and which of them are sensitive."""
        with self._exclusive():
            self._refresh()
            self._snapshot.outputs = dict(outputs)
            self._snapshot.sensitive_outputs = sorted(name for name in sensitive if name in outputs)
            self._snapshot.serial += 1
            self._snapshot.update_timestamp()
            self._save_state()

    @property
    def snapshot(self) -> StateSnapshot:
        """Copy of the current snapshot."""
        with self._lock:
            return self._snapshot.model_copy(deep=True)

    # =========================================================================
    # Backups
    # =========================================================================

    def create_backup(self) -> str:
        """
        Create a backup of the persisted state.

        Returns:
            Path to the backup file, or "" when there is nothing to back up
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No state file to backup")
                return ""

            # Ensure backup directory exists
            self.backup_dir.mkdir(parents=True, exist_ok=True)

            # Create timestamped backup
            timestamp = time.strftime("%Y%m%d_%H%M%S")
            backup_file = self.backup_dir / f"state_backup_{timestamp}_{self._snapshot.serial}.joblib"
            data = {
                "format_version": STATE_FORMAT_VERSION,
                "state": self._snapshot.model_dump(),
                "backup_timestamp": time.time(),
            }
            joblib.dump(data, backup_file)
            logger.info(f"Created backup: {backup_file}")
            return str(backup_file)

    def restore_from_backup(self, backup_file: Path) -> None:
        """
        Restore state from a backup file.

        Raises:
            StateFormatError: If the backup cannot be read
        """
        snapshot = self._load_file(Path(backup_file))
        with self._exclusive():
            self._snapshot = snapshot
            self._save_state()
            logger.info(f"Restored state from backup: {backup_file}")
