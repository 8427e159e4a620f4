"""
Write-safety guard for a database file owned by another application.

Zotero keeps zotero.sqlite open while it runs and does not expect other
writers. The guard refuses to write while Zotero appears to be active,
takes one timestamped backup per session before the first write, probes
the database before and after loading and before saving, and replaces the
file atomically (temporary file + rename).

These checks reduce the risk of corrupting the library; they do not
eliminate it. Nothing stops Zotero from starting between the liveness
check and the rename.
"""

import logging
import os
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import BACKUP_DIRNAME, BridgeConfig
from .errors import IntegrityCheckFailedError, LiveWriterDetectedError

logger = logging.getLogger(__name__)

# Tables read by the integrity probe
PROBE_TABLES = ("items", "itemData", "collections", "tags", "libraries")


def find_owner_processes(names) -> list[psutil.Process]:
    """Running processes whose name matches one of names (case-insensitive)."""
    wanted = {n.lower() for n in names}
    own_pid = os.getpid()
    found = []
    for proc in psutil.process_iter(["name"]):
        try:
            name = (proc.info.get("name") or "").lower()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if name in wanted and proc.pid != own_pid:
            found.append(proc)
    return found


class WriteGuard:
    """
    Guards every write of the in-memory image back to the database file.

    Args:
        db_path: The database file being protected
        config: Process names, lock suffixes and backup location
        process_probe: Override for the liveness check (returns True if the
            owner is running). Defaults to a psutil process scan.
    """

    def __init__(
        self,
        db_path: Path,
        config: Optional[BridgeConfig] = None,
        process_probe: Optional[Callable[[], bool]] = None,
    ):
        self._db_path = Path(db_path)
        self._config = config or BridgeConfig(db_path=self._db_path)
        self._process_probe = process_probe
        self._backup_path: Optional[Path] = None

    @property
    def backup_path(self) -> Optional[Path]:
        """Backup taken in this session, if any."""
        return self._backup_path

    @property
    def backup_dir(self) -> Path:
        return self._config.backup_dir or (self._db_path.parent / BACKUP_DIRNAME)

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    def owner_running(self) -> bool:
        if self._process_probe is not None:
            return self._process_probe()
        return bool(find_owner_processes(self._config.owner_process_names))

    def lock_sentinels(self) -> list[Path]:
        """Lock or journal files next to the database that indicate an open writer."""
        sentinels = []
        for suffix in self._config.lock_suffixes:
            candidate = self._db_path.with_name(self._db_path.name + suffix)
            if candidate.exists():
                sentinels.append(candidate)
        return sentinels

    def check_writable(self) -> None:
        """
        Raise if the owning application looks active.

        Raises:
            LiveWriterDetectedError: Owner process running or sentinel present
        """
        if self.owner_running():
            logger.warning("Refusing write to %s: Zotero is running", self._db_path)
            raise LiveWriterDetectedError(
                "Zotero appears to be running. Close Zotero before modifying "
                f"{self._db_path}"
            )
        sentinels = self.lock_sentinels()
        if sentinels:
            names = ", ".join(p.name for p in sentinels)
            logger.warning("Refusing write to %s: lock files present (%s)", self._db_path, names)
            raise LiveWriterDetectedError(
                f"Database appears to be open by another writer (found {names})"
            )

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def probe(self, conn: sqlite3.Connection, label: str = "database") -> None:
        """
        Read a row from each core table.

        Raises:
            IntegrityCheckFailedError: A table is missing or unreadable
        """
        for table in PROBE_TABLES:
            try:
                conn.execute(f"SELECT * FROM {table} LIMIT 1").fetchall()
            except sqlite3.DatabaseError as e:
                logger.error("Integrity probe failed on %s (%s): %s", label, table, e)
                raise IntegrityCheckFailedError(
                    f"Integrity check failed on {label}: cannot read {table}: {e}"
                ) from e

    def probe_file(self) -> None:
        """Probe the database file itself, opened read-only."""
        uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.DatabaseError as e:
            raise IntegrityCheckFailedError(f"Cannot open {self._db_path}: {e}") from e
        try:
            self.probe(conn, label=str(self._db_path))
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Save path
    # -------------------------------------------------------------------------

    def backup(self) -> Path:
        """Copy the database file to a timestamped backup (once per session)."""
        if self._backup_path is not None:
            return self._backup_path
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / f"{self._db_path.stem}.{stamp}{self._db_path.suffix}"
        shutil.copy2(self._db_path, target)
        self._backup_path = target
        logger.info("Backed up %s to %s", self._db_path, target)
        return target

    def write(self, conn: sqlite3.Connection) -> None:
        """
        Replace the database file with the contents of conn.

        Raises:
            LiveWriterDetectedError: Owner became active since the mutation
            IntegrityCheckFailedError: The image fails the probe
        """
        self.check_writable()
        self.probe(conn, label="in-memory image")
        if self._db_path.exists():
            self.backup()

        tmp_path = self._db_path.with_name(f".{self._db_path.name}.{os.getpid()}.tmp")
        try:
            target = sqlite3.connect(str(tmp_path))
            try:
                conn.backup(target)
            finally:
                target.close()
            os.replace(tmp_path, self._db_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        logger.info("Saved %s", self._db_path)
