"""Database dump/restore with retention pruning and a recurring schedule.

Artifacts are named ``<product>_backup_<ISO8601 with ':' and '.' as '-'>.sql``
and live in one directory; listing and pruning only consider files that
match that prefix/suffix.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from salesbot.constants import BACKUP_SUFFIX, DEFAULT_MAX_BACKUPS
from salesbot.errors import BackupFailedError
from salesbot.models import BackupRecord, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dump tool
# ---------------------------------------------------------------------------


@runtime_checkable
class DumpTool(Protocol):
    """External dump/restore utility. Both raise ``BackupFailedError``."""

    async def dump(self, path: Path) -> None: ...

    async def restore(self, path: Path) -> None: ...


class PgDumpTool:
    """Runs ``pg_dump``/``psql`` as subprocesses with ``PGPASSWORD`` set."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        database: str,
        password: str | None = None,
        timeout: float = 3600.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._database = database
        self._password = password
        self._timeout = timeout

    def _connection_args(self) -> list[str]:
        return [
            "-h", self._host,
            "-p", str(self._port),
            "-U", self._user,
            "-d", self._database,
            "--no-password",
        ]

    async def _run(self, program: str, args: list[str]) -> None:
        env = dict(os.environ)
        if self._password:
            env["PGPASSWORD"] = self._password
        try:
            proc = await asyncio.create_subprocess_exec(
                program, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise BackupFailedError(f"Could not start {program}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise BackupFailedError(f"{program} timed out after {self._timeout:.0f}s") from exc

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise BackupFailedError(f"{program} exited with {proc.returncode}: {message}")

    async def dump(self, path: Path) -> None:
        await self._run("pg_dump", [*self._connection_args(), "-f", str(path)])

    async def restore(self, path: Path) -> None:
        await self._run("psql", [*self._connection_args(), "-f", str(path)])


# ---------------------------------------------------------------------------
# BackupManager
# ---------------------------------------------------------------------------


def backup_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with ``:`` and ``.`` replaced by ``-``."""
    iso = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"
    return iso.replace(":", "-").replace(".", "-")


class BackupManager:
    """Snapshot/restore of the live store, exclusive with itself.

    - ``create_backup()`` dumps, verifies the artifact, then prunes.
    - ``restore_backup()`` overwrites the live store; the caller must have
      obtained explicit operator confirmation first.
    - ``start_auto_backup()`` owns a single background task; restarting
      replaces it, ``stop_auto_backup()`` cancels it without interrupting
      a backup already running.
    """

    def __init__(
        self,
        tool: DumpTool,
        backup_dir: str | Path,
        product_name: str = "ecstasy_bot",
        max_backups: int = DEFAULT_MAX_BACKUPS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_backups < 1:
            raise ValueError(f"max_backups must be at least 1, got {max_backups}")
        self._tool = tool
        self._dir = Path(backup_dir)
        self._prefix = f"{product_name}_backup_"
        self._max_backups = max_backups
        self._clock = clock
        self._lock = asyncio.Lock()
        self._auto_task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Future[BackupRecord] | None = None
        self._interval_hours: float | None = None
        self._last_backup_at: str | None = None
        self._last_error: str | None = None
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def backup_dir(self) -> Path:
        return self._dir

    @property
    def running(self) -> bool:
        """True while a backup or restore holds the exclusive lock."""
        return self._lock.locked()

    def _matches(self, name: str) -> bool:
        return name.startswith(self._prefix) and name.endswith(BACKUP_SUFFIX)

    # -- create / prune -----------------------------------------------------------

    async def create_backup(self) -> BackupRecord:
        """Dump the store to a new artifact and prune old ones.

        Raises ``BackupFailedError`` if the tool fails or the artifact is
        missing or empty; such artifacts are removed and never counted.
        """
        async with self._lock:
            created = self._clock()
            name = f"{self._prefix}{backup_timestamp(created)}{BACKUP_SUFFIX}"
            path = self._dir / name
            logger.info("Starting database backup %s.", name)

            try:
                await self._tool.dump(path)
                size = path.stat().st_size if path.exists() else 0
                if size == 0:
                    raise BackupFailedError(f"Backup artifact {name} is empty")
            except BackupFailedError as e:
                self._discard(path)
                self._last_error = str(e)
                logger.error("Backup %s failed: %s", name, e)
                raise

            record = BackupRecord(name=name, path=str(path), size_bytes=size, created_at=created)
            self._last_backup_at = created.isoformat()
            self._last_error = None
            logger.info("Backup %s created (%.2f KB).", name, size / 1024)
            await self.prune_old_backups()
            return record

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial backup %s: %s", path.name, e)

    async def prune_old_backups(self) -> int:
        """Delete all artifacts beyond the newest ``max_backups``.

        Deletion failures are logged and skipped. Returns the count removed.
        """
        backups = await self.list_backups()
        removed = 0
        for record in backups[self._max_backups:]:
            try:
                Path(record.path).unlink()
                removed += 1
                logger.info("Old backup removed: %s.", record.name)
            except OSError as e:
                logger.warning("Failed to remove old backup %s: %s", record.name, e)
        return removed

    async def list_backups(self) -> list[BackupRecord]:
        """Artifacts matching the naming convention, newest first."""
        records: list[tuple[float, BackupRecord]] = []
        try:
            entries = list(self._dir.iterdir())
        except OSError as e:
            logger.warning("Cannot list backup directory %s: %s", self._dir, e)
            return []
        for entry in entries:
            if not self._matches(entry.name) or not entry.is_file():
                continue
            try:
                stat = entry.stat()
            except OSError:
                continue
            records.append((
                stat.st_mtime,
                BackupRecord(
                    name=entry.name,
                    path=str(entry),
                    size_bytes=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ),
            ))
        # Timestamped names break ties between files with equal mtimes.
        records.sort(key=lambda item: (item[0], item[1].name), reverse=True)
        return [record for _, record in records]

    # -- restore ------------------------------------------------------------------

    def _resolve(self, backup: str | Path) -> Path:
        path = Path(backup)
        if not path.is_absolute() and path.parent == Path("."):
            path = self._dir / path
        return path

    async def restore_backup(self, backup: str | Path) -> bool:
        """Overwrite the live store from an artifact (name or path).

        Destructive. Raises ``BackupFailedError`` if the artifact is
        unknown or the restore tool fails.
        """
        path = self._resolve(backup)
        if not self._matches(path.name) or not path.is_file():
            raise BackupFailedError(f"Backup {path.name} not found")
        async with self._lock:
            logger.warning("Restoring database from %s.", path.name)
            await self._tool.restore(path)
        logger.info("Backup %s restored.", path.name)
        return True

    # -- schedule -----------------------------------------------------------------

    async def start_auto_backup(self, interval_hours: float) -> None:
        """Back up now and then every ``interval_hours``, replacing any prior schedule."""
        if interval_hours <= 0:
            raise ValueError(f"interval_hours must be positive, got {interval_hours}")
        if self._auto_task is not None:
            await self.stop_auto_backup()
        self._interval_hours = interval_hours
        self._auto_task = asyncio.create_task(self._auto_backup_loop(interval_hours * 3600))
        logger.info("Automatic backup scheduled every %s hour(s).", interval_hours)

    async def _auto_backup_loop(self, interval_secs: float) -> None:
        """Run backups until cancelled; a failed tick never stops the loop."""
        try:
            while True:
                self._inflight = asyncio.ensure_future(self.create_backup())
                self._inflight.add_done_callback(self._collect_backup_result)
                try:
                    # Shielded: cancelling the schedule lets a running dump finish.
                    await asyncio.shield(self._inflight)
                except BackupFailedError:
                    logger.error("Scheduled backup failed; next attempt in %.0fs.", interval_secs)
                except Exception:
                    logger.exception("Unexpected error during scheduled backup.")
                await asyncio.sleep(interval_secs)
        except asyncio.CancelledError:
            pass

    def _collect_backup_result(self, task: asyncio.Future[BackupRecord]) -> None:
        if self._inflight is task:
            self._inflight = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._auto_task is None:
            # The schedule was stopped mid-backup; nobody else awaits this result.
            logger.error("Backup finished after the schedule stopped and failed: %s", exc)

    async def stop_auto_backup(self) -> bool:
        """Cancel the schedule. Returns False if nothing was scheduled."""
        task = self._auto_task
        if task is None:
            return False
        self._auto_task = None
        self._interval_hours = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Automatic backup stopped.")
        return True

    @property
    def auto_backup_active(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    async def status(self) -> dict[str, Any]:
        """Backup health summary for the dashboard."""
        backups = await self.list_backups()
        return {
            "total_backups": len(backups),
            "latest_backup": backups[0].to_dict() if backups else None,
            "auto_backup_active": self.auto_backup_active,
            "interval_hours": self._interval_hours,
            "running": self.running,
            "last_backup_at": self._last_backup_at,
            "last_error": self._last_error,
            "backup_directory": str(self._dir),
            "max_backups": self._max_backups,
        }
