"""
Backup Registry: Original bytes and permission bits of every touched file.

A path is captured exactly once per session, before its first mutation.
Restoration writes every snapshot back, keeps going after individual
failures and reports an aggregate result.
"""
import os
import stat
import logging
from pathlib import Path
from typing import Iterator, Optional, Union

from pydantic import BaseModel, Field

from .exceptions import RestoreError

logger = logging.getLogger("shadow_secret.backup")


class Backup:
    """Snapshot of one file taken before injection."""

    __slots__ = ("path", "content", "mode", "restored")

    def __init__(self, path: Path, content: bytes, mode: int):
        self.path = path
        self.content = content
        self.mode = mode
        self.restored = False

    def __repr__(self) -> str:
        return (
            f"<Backup {self.path} mode={oct(self.mode)} "
            f"size={len(self.content)} restored={self.restored}>"
        )

    @classmethod
    def capture(cls, path: Path) -> "Backup":
        """Read the file's bytes and permission bits.

        Raises:
            OSError: If the file cannot be read or stat'ed.
        """
        with open(path, "rb") as fp:
            content = fp.read()
        mode = stat.S_IMODE(os.stat(path).st_mode)
        return cls(path, content, mode)

    def matches_disk(self) -> bool:
        """True when the file already holds the original bytes and mode."""
        try:
            if stat.S_IMODE(os.stat(self.path).st_mode) != self.mode:
                return False
            with open(self.path, "rb") as fp:
                return fp.read() == self.content
        except OSError:
            return False

    def restore(self) -> None:
        """Write original bytes back and reapply permission bits.

        Raises:
            OSError: If the file cannot be written or chmod'ed.
        """
        if not self.matches_disk():
            with open(self.path, "wb") as fp:
                fp.write(self.content)
            os.chmod(self.path, self.mode)
        self.restored = True


class RestoreFailure(BaseModel):
    path: Path
    error: str


class RestoreResult(BaseModel):
    """Aggregate outcome of ``restore_all()``."""

    restored: list[Path] = Field(default_factory=list)
    skipped: list[Path] = Field(default_factory=list)
    failed: list[RestoreFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_paths(self) -> list[Path]:
        return [f.path for f in self.failed]

    def raise_for_failures(self) -> None:
        """Raise RestoreError if any path could not be restored."""
        if self.failed:
            raise RestoreError(self)


class BackupRegistry:
    """Per-session registry of file snapshots, keyed by absolute path."""

    def __init__(self):
        self._entries: dict[Path, Backup] = {}

    @staticmethod
    def _key(path: Union[str, Path]) -> Path:
        return Path(os.path.abspath(path))

    def backup(self, path: Union[str, Path]) -> Backup:
        """Capture ``path`` unless it is already registered.

        Later calls for the same path return the first snapshot untouched,
        so already-injected content is never mistaken for the original.

        Raises:
            OSError: If the file cannot be read or stat'ed.
        """
        key = self._key(path)
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        entry = Backup.capture(key)
        self._entries[key] = entry
        logger.debug("Backed up %s (mode %s)", key, oct(entry.mode))
        return entry

    def get(self, path: Union[str, Path]) -> Optional[Backup]:
        return self._entries.get(self._key(path))

    def restore_all(self) -> RestoreResult:
        """Restore every pending snapshot.

        Already-restored entries are skipped. A failure on one path never
        stops the remaining paths from being attempted.
        """
        result = RestoreResult()
        for path, entry in self._entries.items():
            if entry.restored:
                result.skipped.append(path)
                continue
            try:
                entry.restore()
            except OSError as err:
                logger.error("Failed to restore %s: %s", path, err)
                result.failed.append(RestoreFailure(path=path, error=str(err)))
            else:
                logger.info("Restored %s", path)
                result.restored.append(path)
        return result

    def clear(self) -> None:
        """Drop every snapshot held by the registry."""
        self._entries.clear()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return self._key(path) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Backup]:
        return iter(list(self._entries.values()))

    @property
    def pending(self) -> list[Path]:
        return [p for p, e in self._entries.items() if not e.restored]
