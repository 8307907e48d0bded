"""
Background scheduler for periodic ledger protection.

Jobs:
- integrity check every ``check_interval_minutes`` (emergency backup on data loss)
- automatic backup every ``auto_backup_interval_minutes``
- daily and weekly backups, when enabled
- duplicate cleanup every ``cleanup_interval_hours``
- one backup at startup, when enabled

Every job is its own asyncio task. A tick that raises is logged and the
next tick still runs; nothing here ever stops the process.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from balance_guard.config import Settings, get_settings
from balance_guard.models.integrity import IntegrityReport
from balance_guard.orchestrator import BackupOrchestrator

logger = structlog.get_logger(__name__)

EMERGENCY_BACKUP_DESCRIPTION = "Emergency backup - data loss detected"

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY


class BackgroundScheduler:
    """Runs the periodic jobs of one orchestrator."""

    def __init__(
        self,
        orchestrator: BackupOrchestrator,
        settings: Optional[Settings] = None,
    ):
        self._orchestrator = orchestrator
        self._settings = settings or get_settings()
        self._jobs: dict[str, tuple[float, Callable[[], Awaitable], bool]] = {}
        self._tasks: dict[str, asyncio.Task] = {}

        self._register_default_jobs()

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def _register_default_jobs(self) -> None:
        backup = self._settings.backup
        integrity = self._settings.integrity
        duplicates = self._settings.duplicates

        self.add_job(
            "integrity_check",
            integrity.check_interval_minutes * MINUTE,
            self.run_integrity_tick,
            run_immediately=True,
        )
        self.add_job(
            "auto_backup",
            backup.auto_backup_interval_minutes * MINUTE,
            self._orchestrator.create_backup,
        )
        if backup.daily_backup_enabled:
            self.add_job("daily_backup", DAY, lambda: self._orchestrator.create_backup("Daily backup"))
        if backup.weekly_backup_enabled:
            self.add_job("weekly_backup", WEEK, lambda: self._orchestrator.create_backup("Weekly backup"))
        self.add_job(
            "duplicate_cleanup",
            duplicates.cleanup_interval_hours * HOUR,
            self._orchestrator.cleanup_duplicates,
        )

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable],
        run_immediately: bool = False,
    ) -> None:
        """Register ``job`` to run every ``interval_seconds``."""
        if interval_seconds <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        if name in self._tasks:
            raise RuntimeError(f"Job {name} is already running")
        self._jobs[name] = (interval_seconds, job, run_immediately)

    async def run_integrity_tick(self) -> IntegrityReport:
        """Integrity check, followed by an emergency backup on data loss."""
        report = await self._orchestrator.run_integrity_check()

        if report.data_loss_detected and self._settings.integrity.emergency_backup_on_data_loss:
            logger.critical("emergency_backup_triggered", issues=report.issues)
            result = await self._orchestrator.create_backup(EMERGENCY_BACKUP_DESCRIPTION)
            if not result.success:
                logger.error("emergency_backup_failed", message=result.message)

        return report

    async def start(self) -> None:
        """Start every registered job; must be called from a running loop."""
        if self._settings.backup.backup_on_startup:
            result = await self._orchestrator.create_backup("Startup backup")
            logger.info("startup_backup", success=result.success, message=result.message)

        for name, (interval, job, run_immediately) in self._jobs.items():
            if name in self._tasks and not self._tasks[name].done():
                continue
            self._tasks[name] = asyncio.create_task(
                self._run_every(name, interval, job, run_immediately),
                name=f"balance-guard-{name}",
            )
        logger.info("scheduler_started", jobs=self.jobs)

    async def stop(self) -> None:
        """Cancel every job and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler_stopped")

    async def run_forever(self) -> None:
        """Start the jobs and block until cancelled."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks.values())
        finally:
            await self.stop()

    @staticmethod
    async def _run_every(
        name: str,
        interval: float,
        job: Callable[[], Awaitable],
        run_immediately: bool,
    ) -> None:
        if not run_immediately:
            await asyncio.sleep(interval)

        while True:
            try:
                await job()
                logger.debug("scheduled_job_completed", job=name)
            except Exception:
                logger.exception("scheduled_job_failed", job=name)
            await asyncio.sleep(interval)
