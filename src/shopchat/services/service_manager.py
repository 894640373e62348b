"""Service lifecycle manager: the archiver plus periodic background jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shopchat.config import ArchiverConfig, SessionConfig
from shopchat.log import get_logger
from shopchat.services.archiver import SessionArchiver

if TYPE_CHECKING:
    from shopchat.ai.handler import ConversationManager

logger = get_logger(__name__)

ARCHIVE_JOB_ID = "archive_pass"
SWEEP_JOB_ID = "inactivity_sweep"


class ServiceManager:
    """Starts the archiver and schedules its passes and the inactivity sweep."""

    def __init__(
        self,
        archiver: SessionArchiver,
        conversations: ConversationManager,
        archiver_config: ArchiverConfig | None = None,
        session_config: SessionConfig | None = None,
    ):
        self._archiver = archiver
        self._conversations = conversations
        self._archiver_config = archiver_config or ArchiverConfig()
        self._session_config = session_config or SessionConfig()
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    def get_archiver(self) -> SessionArchiver:
        return self._archiver

    async def start_all(self) -> None:
        await self._archiver.start()
        self._scheduler.add_job(
            self._archiver.run_pass,
            IntervalTrigger(seconds=self._archiver_config.interval),
            id=ARCHIVE_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._sweep,
            IntervalTrigger(seconds=self._session_config.sweep_interval),
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("all_services_started", jobs=[job.id for job in self._scheduler.get_jobs()])

    async def _sweep(self) -> None:
        closed = await self._conversations.close_idle()
        if closed:
            await self._archiver.run_pass()

    async def stop_all(self) -> None:
        """Stop scheduling, then let the archiver flush what is pending."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        await self._archiver.stop()
        logger.info("all_services_stopped")

    async def health_check_all(self) -> dict[str, Any]:
        return {
            "scheduler": self._scheduler.running,
            self._archiver.service_name: await self._archiver.health_check(),
        }
