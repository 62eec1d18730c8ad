"""Background scheduler for the periodic forced refresh."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dockwatch.db import AsyncSessionLocal
from dockwatch.exceptions import DockwatchError, RateLimitExceededError
from dockwatch.models import BatchRun, PortainerInstance
from dockwatch.services.container_query_service import ContainerQueryService
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import StateService, get_state_service

logger = logging.getLogger(__name__)

JOB_ID = "container_check"
DEFAULT_SCHEDULE = "0 */6 * * *"


class SchedulerService:
    """Service for managing background scheduled tasks."""

    def __init__(
        self,
        state: Optional[StateService] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ) -> None:
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.state = state
        self._session_factory = session_factory
        self._check_schedule: str = DEFAULT_SCHEDULE
        self._enabled: bool = True
        self._last_check: Optional[datetime] = None

    async def start(self) -> None:
        """Start the background scheduler.

        Loads the schedule from settings; nothing is scheduled when checks are disabled.
        """
        try:
            async with self._session_factory() as db:
                self._check_schedule = await SettingsService.get(
                    db, "check_schedule", default=DEFAULT_SCHEDULE
                )
                self._enabled = await SettingsService.get_bool(db, "check_enabled", default=True)

            if not self._enabled:
                logger.info("Scheduled container checks are disabled in settings")
                return

            self.scheduler = AsyncIOScheduler()
            self.scheduler.add_job(
                self.run_batch_check,
                CronTrigger.from_crontab(self._check_schedule),
                id=JOB_ID,
                name="Scheduled Container Update Check",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs
            )
            self.scheduler.start()
            logger.info(f"Background scheduler started with schedule: {self._check_schedule}")

            job = self.scheduler.get_job(JOB_ID)
            if job and job.next_run_time:
                logger.info(f"Next container check scheduled for: {job.next_run_time}")

        except OperationalError as e:
            logger.error(f"Database connection error during scheduler start: {e}")
            raise
        except ValueError as e:
            logger.error(f"Invalid cron schedule or configuration: {e}")
            raise

    async def stop(self) -> None:
        """Stop the background scheduler."""
        if self.scheduler:
            try:
                self.scheduler.shutdown(wait=False)
                # Give event loop a chance to process shutdown
                await asyncio.sleep(0)
                logger.info("Background scheduler stopped")
            except RuntimeError as e:
                logger.error(f"Scheduler shutdown error: {e}")
            self.scheduler = None

    async def reload_schedule(self, db: AsyncSession) -> None:
        """Reschedule after the check settings changed."""
        new_schedule = await SettingsService.get(db, "check_schedule", default=DEFAULT_SCHEDULE)
        new_enabled = await SettingsService.get_bool(db, "check_enabled", default=True)

        if new_schedule != self._check_schedule or new_enabled != self._enabled:
            logger.info(
                f"Schedule changed: {self._check_schedule} -> {new_schedule}, "
                f"enabled: {self._enabled} -> {new_enabled}"
            )
            await self.stop()
            await self.start()

    async def run_batch_check(self) -> Optional[BatchRun]:
        """Forced refresh for every user that owns a Portainer instance.

        Progress is recorded in a batch_runs row. A registry rate limit stops
        the run; the remaining users are checked on the next schedule.
        """
        logger.info("Starting scheduled container check")
        state = self.state or get_state_service()
        started = datetime.now(UTC)

        try:
            async with self._session_factory() as db:
                run = BatchRun(job_type=JOB_ID, status="running", started_at=started)
                db.add(run)
                await db.commit()

                result = await db.execute(select(PortainerInstance.user_id).distinct())
                user_ids = sorted(result.scalars().all())

                checked = 0
                updates = 0
                errors = []
                for user_id in user_ids:
                    service = ContainerQueryService(db, state)
                    try:
                        bundle = await service.get_all_containers_with_updates(
                            force_refresh=True, user_id=user_id
                        )
                    except RateLimitExceededError as e:
                        errors.append(f"user {user_id}: {e}")
                        logger.error(f"Scheduled check stopped by registry rate limit: {e}")
                        break
                    except DockwatchError as e:
                        errors.append(f"user {user_id}: {e}")
                        logger.error(f"Scheduled check failed for user {user_id}: {e}")
                        continue
                    checked += len(bundle["containers"])
                    updates += sum(1 for container in bundle["containers"] if container["has_update"])
                    errors.extend(
                        f"{error['portainer_url']} {error.get('container_name') or ''}: {error['error']}".strip()
                        for error in bundle["errors"]
                    )

                run.status = "failed" if errors and not checked else "completed"
                run.containers_checked = checked
                run.updates_found = updates
                run.error_message = "\n".join(errors) if errors else None
                run.completed_at = datetime.now(UTC)
                await db.commit()

                self._last_check = run.completed_at
                duration = (run.completed_at - started).total_seconds()
                logger.info(
                    f"Scheduled container check completed in {duration:.2f}s: "
                    f"{checked} containers checked, {updates} updates found, {len(errors)} errors"
                )
                return run

        except (OperationalError, IntegrityError) as e:
            duration = (datetime.now(UTC) - started).total_seconds()
            logger.error(f"Database error during scheduled container check after {duration:.2f}s: {e}")
            return None

    def get_next_run_time(self) -> Optional[datetime]:
        """Next scheduled run, None when the scheduler is not running."""
        if not self.scheduler:
            return None
        try:
            job = self.scheduler.get_job(JOB_ID)
        except JobLookupError as e:
            logger.warning(f"Failed to get job: {e}")
            return None
        return job.next_run_time if job else None

    def get_status(self) -> dict:
        """Get scheduler status information."""
        next_run = self.get_next_run_time() if self.scheduler and self.scheduler.running else None
        return {
            "running": bool(self.scheduler and self.scheduler.running),
            "enabled": self._enabled,
            "schedule": self._check_schedule,
            "next_run": next_run.isoformat() if next_run else None,
            "last_check": self._last_check.isoformat() if self._last_check else None,
        }


# Global scheduler instance
scheduler_service = SchedulerService()
