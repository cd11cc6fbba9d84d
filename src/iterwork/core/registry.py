"""Per-iteration JSON registry.

Each iteration's record lives inside its own linked tree (``.iteration.json``)
so it travels with the tree. A mirror copy is kept under the configuration
directory; comparing the two is how a tree deleted out-of-band is detected.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError

from iterwork.core.allocator import LiveAllocations
from iterwork.errors import IterationLockedError
from iterwork.models.context import ProjectContext
from iterwork.models.iteration import IterationInstance

logger = logging.getLogger(__name__)

RECORD_FILENAME = ".iteration.json"


class IterationRegistry:
    """Durable iteration state for one project."""

    def __init__(
        self,
        project_path: Path,
        context: ProjectContext,
        *,
        registry_root: Path,
        locks_root: Path,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self._project_path = project_path
        self._context = context
        self._mirror_dir = registry_root / context.project_id
        self._locks_dir = locks_root / context.project_id
        self._lock_timeout = lock_timeout_seconds

    @property
    def workspace_root(self) -> Path:
        return self._project_path / self._context.iteration.workspace_path

    def workspace_for(self, name: str) -> Path:
        return self.workspace_root / name

    def record_path(self, name: str) -> Path:
        return self.workspace_for(name) / RECORD_FILENAME

    def mirror_path(self, name: str) -> Path:
        return self._mirror_dir / f"{name}.json"

    def list(self) -> list[IterationInstance]:
        if not self.workspace_root.is_dir():
            return []
        instances: list[IterationInstance] = []
        for entry in sorted(self.workspace_root.iterdir()):
            record = entry / RECORD_FILENAME
            if not record.is_file():
                continue
            instance = _read_record(record)
            if instance is not None:
                instances.append(instance)
        return sorted(instances, key=lambda item: item.created_at, reverse=True)

    def load(self, name: str) -> IterationInstance | None:
        record = self.record_path(name)
        if not record.is_file():
            return None
        return _read_record(record)

    def load_mirror(self, name: str) -> IterationInstance | None:
        mirror = self.mirror_path(name)
        if not mirror.is_file():
            return None
        return _read_record(mirror)

    def mirrored_names(self) -> list[str]:
        if not self._mirror_dir.is_dir():
            return []
        return sorted(path.stem for path in self._mirror_dir.glob("*.json"))

    def exists(self, name: str) -> bool:
        return (
            self.record_path(name).exists()
            or self.mirror_path(name).exists()
            or self.workspace_for(name).exists()
        )

    def save(self, instance: IterationInstance) -> None:
        payload = instance.model_dump_json(indent=2)
        _atomic_write(self.record_path(instance.name), payload)
        _atomic_write(self.mirror_path(instance.name), payload)

    def restore_record(self, instance: IterationInstance) -> None:
        _atomic_write(self.record_path(instance.name), instance.model_dump_json(indent=2))

    def delete(self, name: str) -> None:
        self.record_path(name).unlink(missing_ok=True)
        self.mirror_path(name).unlink(missing_ok=True)

    def delete_mirror(self, name: str) -> None:
        self.mirror_path(name).unlink(missing_ok=True)

    def live_allocations(self, *, exclude: str | None = None) -> LiveAllocations:
        """Ports and schema names held by every known iteration except ``exclude``."""
        taken = LiveAllocations()
        seen: set[str] = set()
        candidates = self.list()
        for name in self.mirrored_names():
            mirror = self.load_mirror(name)
            if mirror is not None:
                candidates.append(mirror)
        for instance in candidates:
            if instance.name == exclude or instance.name in seen:
                continue
            seen.add(instance.name)
            taken.ports.update(instance.ports())
            if instance.allocated_database is not None:
                taken.schema_names.add(instance.allocated_database.schema_name)
        return taken

    def lock(self, name: str) -> IterationLock:
        """Advisory lock held for the duration of one lifecycle operation."""
        self._locks_dir.mkdir(parents=True, exist_ok=True)
        return IterationLock(self._locks_dir / f"{name}.lock", f"iteration {name}", self._lock_timeout)

    def allocation_lock(self) -> IterationLock:
        """Project-wide lock held from the collision check until the new record is saved."""
        self._locks_dir.mkdir(parents=True, exist_ok=True)
        return IterationLock(
            self._locks_dir / ".allocation.lock",
            f"port allocation for {self._context.project_id}",
            self._lock_timeout,
        )


class IterationLock:
    """Advisory lock file."""

    def __init__(self, path: Path, holder: str, timeout: float) -> None:
        self.path = path
        self._holder = holder
        self._lock = FileLock(str(path), timeout=timeout)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def __enter__(self) -> "IterationLock":
        try:
            self._lock.acquire()
        except Timeout as exc:
            msg = f"{self._holder} is locked by another operation"
            raise IterationLockedError(
                msg, remedy=f"wait for it to finish or delete {self.path}"
            ) from exc
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


def _read_record(path: Path) -> IterationInstance | None:
    try:
        return IterationInstance.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("skipping unreadable iteration record %s: %s", path, exc)
        return None


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
