from prometheus_client import Counter, Gauge, start_http_server
from datetime import datetime
from typing import Dict, Optional
from vmbox.config import settings
from vmbox.core.metadata import VMStatus
from vmbox.db.database import vm_repository
import psutil
import asyncio
import logging

logger = logging.getLogger(__name__)

# VM metrics
vm_count = Gauge('vmbox_vms', 'Number of VM records by status', ['status'])
terminal_sessions = Gauge('vmbox_terminal_sessions', 'Active terminal sessions')
port_pool_used = Gauge('vmbox_port_pool_used', 'Host ports held by VMs')
port_pool_capacity = Gauge('vmbox_port_pool_capacity', 'Host ports available for VMs')
credits_charged = Counter('vmbox_credits_charged_total', 'Credits charged for VM runtime')

# System metrics
system_cpu_usage = Gauge('system_cpu_usage_percent', 'System CPU usage')
system_memory_usage = Gauge('system_memory_usage_percent', 'System memory usage')
system_disk_usage = Gauge('system_disk_usage_percent', 'System disk usage')

alert_count = Counter('vmbox_alerts_total', 'Total number of alerts', ['type'])

class MetricsCollector:
    def __init__(self, services, interval: Optional[int] = None, alert_cooldown: int = 300):
        self.services = services
        self.interval = interval or settings.MONITOR_INTERVAL
        self.alert_cooldown = alert_cooldown
        self.running = False
        self._last_alert: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start metrics collection"""
        start_http_server(settings.PROMETHEUS_PORT)
        self.running = True
        self._task = asyncio.create_task(self._collect_metrics())
        logger.info(f"Metrics server started on port {settings.PROMETHEUS_PORT}")

    async def stop(self):
        """Stop metrics collection"""
        self.running = False
        if self._task:
            self._task.cancel()
            self._task = None

    def check_system_stats(self, stats: Dict[str, float], now: Optional[datetime] = None) -> Optional[str]:
        """Return an alert message if a host threshold is exceeded, at most once per cooldown"""
        now = now or datetime.now()
        if self._last_alert and (now - self._last_alert).total_seconds() < self.alert_cooldown:
            return None

        thresholds = {
            "CPU": (stats["cpu"], settings.MONITOR_CPU_THRESHOLD),
            "memory": (stats["memory"], settings.MONITOR_MEMORY_THRESHOLD),
            "disk": (stats["disk"], settings.MONITOR_DISK_THRESHOLD),
        }
        messages = [
            f"System {name} at {value:.1f}% (threshold: {limit}%)"
            for name, (value, limit) in thresholds.items()
            if value > limit
        ]
        if not messages:
            return None
        self._last_alert = now
        return "System resource alert: " + ", ".join(messages)

    async def collect_once(self):
        """Refresh every gauge once"""
        async with self.services.db.session() as session:
            counts = await vm_repository.count_by_status(session)
        for status in VMStatus:
            vm_count.labels(status.value).set(counts.get(status.value, 0))

        terminal_sessions.set(self.services.terminals.active_count())

        used, capacity = await self.services.ports.usage()
        port_pool_used.set(used)
        port_pool_capacity.set(capacity)

        stats = {
            "cpu": psutil.cpu_percent(),
            "memory": psutil.virtual_memory().percent,
            "disk": psutil.disk_usage('/').percent,
        }
        system_cpu_usage.set(stats["cpu"])
        system_memory_usage.set(stats["memory"])
        system_disk_usage.set(stats["disk"])

        alert = self.check_system_stats(stats)
        if alert:
            alert_count.labels("system").inc()
            logger.warning(alert)

    async def _collect_metrics(self):
        """Collect metrics periodically"""
        while self.running:
            try:
                await self.collect_once()
            except Exception as e:
                logger.error(f"Error collecting metrics: {str(e)}")

            await asyncio.sleep(self.interval)
