"""Wiring of the long-lived components shared by the API, CLI and tasks."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
import logging

from vmbox.config import Settings, settings as default_settings
from vmbox.core.credits import CreditMeter, CreditRequestManager
from vmbox.core.docker import DockerManager
from vmbox.core.images import ImageManager
from vmbox.core.lifecycle import VMLifecycleManager
from vmbox.core.metadata import VMStatus, utcnow
from vmbox.core.ports import PortAllocator
from vmbox.core.terminal import TerminalSessionManager
from vmbox.db.database import DatabaseManager, credit_request_repository, user_repository, vm_repository
from vmbox.db.models import User
from vmbox.monitor.metrics import MetricsCollector
from vmbox.scheduler.tasks import VMScheduler

logger = logging.getLogger(__name__)

@dataclass
class VMServices:
    settings: Settings
    db: DatabaseManager
    runtime: DockerManager
    ports: PortAllocator
    credits: CreditMeter
    credit_requests: CreditRequestManager
    images: ImageManager
    lifecycle: VMLifecycleManager
    terminals: TerminalSessionManager
    scheduler: VMScheduler
    metrics: MetricsCollector

    async def authenticate(self, token: Optional[str]) -> Optional[User]:
        """Resolve an API key to an active user"""
        if not token:
            return None
        async with self.db.session() as session:
            user = await user_repository.get_by_api_key(session, token)
        if user is None or not user.is_active:
            return None
        return user

    async def stats(self) -> Dict[str, int]:
        """User, VM and pending credit request counts for the admin view"""
        async with self.db.session() as session:
            users = await user_repository.count(session)
            by_status = await vm_repository.count_by_status(session)
            pending = await credit_request_repository.count_pending(session)
        return {
            "total_users": users,
            "total_vms": sum(by_status.values()),
            "running_vms": by_status.get(VMStatus.RUNNING.value, 0),
            "pending_requests": pending,
        }

    async def start(self) -> None:
        if not await self.db.initialize():
            raise RuntimeError("Database initialization failed")
        if self.settings.DB_CREATE_TABLES and not await self.db.create_tables():
            raise RuntimeError("Failed to create database tables")
        if not await self.runtime.initialize():
            raise RuntimeError("Docker manager initialization failed")

        await self.terminals.start()
        if self.settings.RECONCILE_ENABLED:
            await self.scheduler.start()
        if self.settings.METRICS_ENABLED:
            await self.metrics.start()
        logger.info("Services started")

    async def stop(self) -> None:
        if self.settings.METRICS_ENABLED:
            await self.metrics.stop()
        if self.settings.RECONCILE_ENABLED:
            await self.scheduler.stop()
        await self.terminals.stop()
        await self.db.close()
        logger.info("Services stopped")

def build_services(
    db: Optional[DatabaseManager] = None,
    runtime=None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> VMServices:
    """Assemble the component graph from settings"""
    settings = settings or default_settings
    db = db or DatabaseManager(settings.DATABASE_URL)
    runtime = runtime or DockerManager(settings.DOCKER_BASE_URL, settings.STORAGE_ROOT)

    ports = PortAllocator(
        db,
        settings.PORT_RANGE_START,
        settings.PORT_RANGE_END,
        settings.RESERVED_PORTS,
    )
    credits = CreditMeter(db, settings.VM_COST_PER_HOUR)
    images = ImageManager(runtime)
    lifecycle = VMLifecycleManager(
        db,
        runtime,
        ports,
        credits,
        images,
        max_vms_per_user=settings.MAX_VMS_PER_USER,
        default_image=settings.DEFAULT_IMAGE,
        default_memory_limit=settings.DEFAULT_MEMORY_LIMIT,
        default_cpu_shares=settings.DEFAULT_CPU_SHARES,
        pids_limit=settings.PIDS_LIMIT,
        stop_timeout=settings.DOCKER_STOP_TIMEOUT,
        clock=clock,
    )
    terminals = TerminalSessionManager(
        lifecycle,
        runtime,
        shell=settings.TERMINAL_SHELL,
        sweep_interval=settings.TERMINAL_SWEEP_INTERVAL,
    )
    services = VMServices(
        settings=settings,
        db=db,
        runtime=runtime,
        ports=ports,
        credits=credits,
        credit_requests=CreditRequestManager(
            db, credits, settings.MAX_PENDING_CREDIT_REQUESTS, clock=clock
        ),
        images=images,
        lifecycle=lifecycle,
        terminals=terminals,
        scheduler=VMScheduler(lifecycle, settings.RECONCILE_INTERVAL),
        metrics=None,
    )
    services.metrics = MetricsCollector(services, settings.MONITOR_INTERVAL)
    return services
