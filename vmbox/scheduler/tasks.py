import asyncio
import logging
from typing import List, Optional
from vmbox.config import settings

logger = logging.getLogger(__name__)

class VMScheduler:
    """Background fleet reconciliation and orphan container reporting"""

    def __init__(self, lifecycle, interval: Optional[int] = None):
        self.lifecycle = lifecycle
        self.interval = interval or settings.RECONCILE_INTERVAL
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start scheduler tasks"""
        self.running = True
        self._tasks = [
            asyncio.create_task(self._reconcile_task()),
            asyncio.create_task(self._orphan_check_task()),
        ]
        logger.info("Scheduler tasks started")

    async def stop(self):
        """Stop scheduler tasks"""
        self.running = False
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    async def run_reconcile(self) -> int:
        reconciled = await self.lifecycle.reconcile_all()
        logger.debug(f"Reconciled {reconciled} VM(s)")
        return reconciled

    async def run_orphan_check(self) -> int:
        orphans = await self.lifecycle.find_orphans()
        for container in orphans:
            logger.warning(
                f"Managed container {container['container_id']} "
                f"({', '.join(container.get('names') or [])}) has no live VM record"
            )
        return len(orphans)

    async def _reconcile_task(self):
        """Bring VM records in line with their containers"""
        while self.running:
            try:
                await self.run_reconcile()
            except Exception as e:
                logger.error(f"Error in reconcile task: {str(e)}")

            await asyncio.sleep(self.interval)

    async def _orphan_check_task(self):
        """Report containers left behind by failed or interrupted operations"""
        while self.running:
            try:
                await self.run_orphan_check()
            except Exception as e:
                logger.error(f"Error in orphan check task: {str(e)}")

            await asyncio.sleep(self.interval * 5)
