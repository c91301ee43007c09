"""Save-data backups: zip archives of an activity's save directory."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path

from playtrack.errors import BackupError

logger = logging.getLogger(__name__)

# Archives kept per activity; the oldest are removed first.
MAX_BACKUPS = 20


class SavedataArchiver:
    """Creates timestamped zip archives under ``<root>/activity_<id>/``."""

    def __init__(self, backup_root: Path, *, max_backups: int = MAX_BACKUPS) -> None:
        self.backup_root = Path(backup_root)
        self.max_backups = max_backups

    def activity_dir(self, activity_id: int) -> Path:
        return self.backup_root / f"activity_{activity_id}"

    def list_backups(self, activity_id: int) -> list[Path]:
        """Existing archives for an activity, oldest first."""
        directory = self.activity_dir(activity_id)
        if not directory.is_dir():
            return []
        return sorted(
            directory.glob(f"savedata_{activity_id}_*.zip"),
            key=lambda path: (path.stat().st_mtime, path.name),
        )

    def __call__(self, activity_id: int, source_path: str, silent: bool = False) -> Path:
        """Archive ``source_path`` and return the archive path.

        Args:
            activity_id: Activity the save data belongs to.
            source_path: Directory holding the save data.
            silent: Log at debug level instead of info (automatic backups).

        Raises:
            BackupError: If the source is missing or is not a directory.
        """
        source = Path(source_path)
        if not source.exists():
            raise BackupError(f"Save data directory does not exist: {source}")
        if not source.is_dir():
            raise BackupError(f"Save data path must be a directory: {source}")

        directory = self.activity_dir(activity_id)
        directory.mkdir(parents=True, exist_ok=True)
        self._cleanup_old_backups(activity_id)

        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        base_name = directory / f"savedata_{activity_id}_{stamp}"
        suffix = 1
        while base_name.with_name(base_name.name + ".zip").exists():
            base_name = directory / f"savedata_{activity_id}_{stamp}_{suffix}"
            suffix += 1

        archive = Path(shutil.make_archive(str(base_name), "zip", root_dir=source))
        level = logging.DEBUG if silent else logging.INFO
        logger.log(level, "Backed up %s to %s (%d bytes)", source, archive, archive.stat().st_size)
        return archive

    def _cleanup_old_backups(self, activity_id: int) -> None:
        """Delete the oldest archives so the next one fits within max_backups."""
        backups = self.list_backups(activity_id)
        if len(backups) < self.max_backups:
            return
        for path in backups[: len(backups) - (self.max_backups - 1)]:
            logger.debug("Removing old backup %s", path)
            path.unlink(missing_ok=True)
