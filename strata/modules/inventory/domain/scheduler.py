from typing import Any, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from strata.modules.inventory.domain.orchestrator import Orchestrator
from strata.shared.core.config import get_settings
from strata.shared.core.exceptions import StrataException

logger = structlog.get_logger()


class InventoryScheduler:
    """Dispatches a provider group sync for every configured scope on an interval."""

    def __init__(self, orchestrator: Orchestrator):
        self.scheduler = AsyncIOScheduler()
        self.orchestrator = orchestrator
        self._last_results: dict[str, str] = {}

    async def sync_scope_job(self, provider: str, scope: str) -> None:
        job_key = f"{provider}:{scope}"
        logger.info("scheduler_dispatching_inventory_sync", provider=provider, scope=scope)
        try:
            group = await self.orchestrator.run_group(provider, scope)
            self._last_results[job_key] = "succeeded"
            logger.info(
                "scheduler_inventory_sync_completed",
                provider=provider,
                scope=scope,
                group_id=group.group_id,
                attempts=group.attempts,
            )
        except StrataException as e:
            # The next tick retries the whole group; the failure is already logged per task.
            self._last_results[job_key] = e.code
            logger.warning(
                "scheduler_inventory_sync_failed",
                provider=provider,
                scope=scope,
                error=e.message,
                error_code=e.code,
            )

    def start(self) -> None:
        """Adds one interval job per configured (provider, scope) and starts APScheduler."""
        settings = get_settings()
        registered = set(self.orchestrator.registered_kinds())
        for provider, scopes in settings.SYNC_SCOPES.items():
            for scope in scopes:
                self.scheduler.add_job(
                    self.sync_scope_job,
                    trigger=IntervalTrigger(
                        minutes=settings.SYNC_SCHEDULE_INTERVAL_MINUTES, timezone="UTC"
                    ),
                    id=f"inventory_sync:{provider}:{scope}",
                    args=[provider, scope],
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
        logger.info(
            "inventory_scheduler_starting",
            jobs=len(self.scheduler.get_jobs()),
            registered_kinds=sorted(registered),
        )
        self.scheduler.start()

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=False)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "jobs": [job.id for job in self.scheduler.get_jobs()],
            "last_results": dict(self._last_results),
        }
