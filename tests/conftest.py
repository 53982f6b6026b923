"""Shared fakes for the runtime, terminal streams and channels."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from vmbox.config import Settings
from vmbox.core.docker import ContainerSpec, ContainerState
from vmbox.core.exceptions import RuntimeAdapterError, RuntimeInstanceNotFoundError
from vmbox.core.metadata import LABEL_MANAGED, UserRole
from vmbox.core.services import VMServices, build_services
from vmbox.core.streams import TerminalStream
from vmbox.core.terminal import TerminalChannel
from vmbox.db.database import DatabaseManager, user_repository


class FakeStream(TerminalStream):
    supports_resize = True

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.written: List[bytes] = []
        self.resizes: List[Tuple[int, int]] = []
        self.closed = False

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def end(self) -> None:
        self._queue.put_nowait(b"")

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def read(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(b"")


class FakeRuntime:
    """In-memory stand-in for DockerManager"""

    def __init__(self, storage_root: Optional[Path] = None):
        self.storage_root = storage_root
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.streams: List[FakeStream] = []
        self.pulled: List[str] = []
        self.calls: List[Tuple[str, str]] = []
        self.fail_create = False
        self.fail_start = False
        self.fail_attach = False
        self.reachable = True
        self._counter = 0
        self._holds: Dict[str, Tuple[asyncio.Event, asyncio.Event]] = {}

    def hold(self, operation: str) -> Tuple[asyncio.Event, asyncio.Event]:
        """Park calls to operation until released; returns (entered, release)"""
        entered, release = asyncio.Event(), asyncio.Event()
        self._holds[operation] = (entered, release)
        return entered, release

    async def _pass_hold(self, operation: str) -> None:
        if operation in self._holds:
            entered, release = self._holds[operation]
            entered.set()
            await release.wait()

    def _get(self, handle: str) -> Dict[str, Any]:
        if not self.reachable:
            raise RuntimeAdapterError("Docker daemon unreachable")
        if handle not in self.containers:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found")
        return self.containers[handle]

    def vanish(self, handle: str) -> None:
        self.containers.pop(handle, None)

    def add_unmanaged(self, handle: str, managed: bool = True) -> None:
        labels = {LABEL_MANAGED: "true"} if managed else {}
        self.containers[handle] = {"running": True, "name": handle, "image": "busybox", "labels": labels}

    async def initialize(self) -> bool:
        return True

    async def ping(self) -> bool:
        return self.reachable

    async def host_info(self) -> Dict[str, Any]:
        return {
            "ServerVersion": "fake",
            "Containers": len(self.containers),
            "ContainersRunning": sum(1 for c in self.containers.values() if c["running"]),
        }

    async def pull_image_if_missing(self, image: str) -> None:
        self.pulled.append(image)

    def ensure_workspace(self, owner_id: str) -> str:
        path = Path(self.storage_root or "/tmp") / "users" / str(owner_id) / "projects"
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    async def create(self, spec: ContainerSpec) -> str:
        await self._pass_hold("create")
        if self.fail_create:
            raise RuntimeAdapterError("create failed")
        self._counter += 1
        handle = f"c{self._counter:04d}"
        labels = dict(spec.labels)
        labels[LABEL_MANAGED] = "true"
        self.containers[handle] = {
            "running": False,
            "name": spec.name,
            "image": spec.image,
            "labels": labels,
            "spec": spec,
        }
        self.calls.append(("create", handle))
        return handle

    async def start(self, handle: str) -> None:
        await self._pass_hold("start")
        container = self._get(handle)
        if self.fail_start:
            raise RuntimeAdapterError("start failed")
        container["running"] = True
        self.calls.append(("start", handle))

    async def stop(self, handle: str, timeout: Optional[int] = None) -> None:
        self._get(handle)["running"] = False
        self.calls.append(("stop", handle))

    async def remove(self, handle: str, force: bool = True) -> None:
        self._get(handle)
        del self.containers[handle]
        self.calls.append(("remove", handle))

    async def inspect(self, handle: str) -> ContainerState:
        container = self._get(handle)
        return ContainerState(
            running=container["running"],
            status="running" if container["running"] else "exited",
            ip_address="172.17.0.2" if container["running"] else None,
            pid=4242 if container["running"] else None,
        )

    async def exec_attach(self, handle: str, command: List[str], tty: bool = True) -> TerminalStream:
        self._get(handle)
        if self.fail_attach:
            raise RuntimeAdapterError("attach failed")
        stream = FakeStream()
        self.streams.append(stream)
        return stream

    async def exec_resize(self, exec_id: str, cols: int, rows: int) -> None:
        pass

    async def exec_run(self, handle: str, command: List[str]) -> Tuple[int, str]:
        self._get(handle)
        return 0, " ".join(command) + "\n"

    async def list_all(self, managed_only: bool = False) -> List[Dict[str, Any]]:
        return [
            {
                "container_id": handle,
                "image": c["image"],
                "names": [c["name"]],
                "state": "running" if c["running"] else "exited",
                "status": "",
                "labels": c["labels"],
                "created": 0,
            }
            for handle, c in self.containers.items()
            if not managed_only or c["labels"].get(LABEL_MANAGED) == "true"
        ]


class FakeChannel(TerminalChannel):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def drop(self) -> None:
        """Simulate the client going away without a close handshake"""
        self._closed = True

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    async def send_json(self, data: Dict[str, Any]) -> None:
        if not self._closed:
            self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        self.close_reason = reason


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


async def settle(rounds: int = 10) -> None:
    """Let background tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def create_user(
    services_or_db,
    username: str = "alice",
    credits: int = 100,
    role: str = UserRole.MEMBER.value,
    api_key: Optional[str] = None,
):
    db = services_or_db.db if isinstance(services_or_db, VMServices) else services_or_db
    async with db.session() as session:
        return await user_repository.create(
            session,
            username=username,
            api_key=api_key or f"key-{username}",
            role=role,
            credits=credits,
        )


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'vmbox.db'}"


@pytest.fixture
def make_settings(tmp_path, db_url):
    def _make(**overrides) -> Settings:
        values = dict(
            DATABASE_URL=db_url,
            STORAGE_ROOT=tmp_path / "storage",
            PORT_RANGE_START=30000,
            PORT_RANGE_END=30009,
            MAX_VMS_PER_USER=3,
            DEFAULT_CREDITS=100,
            VM_COST_PER_HOUR=10,
            RECONCILE_ENABLED=False,
            METRICS_ENABLED=False,
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def runtime(tmp_path) -> FakeRuntime:
    return FakeRuntime(storage_root=tmp_path / "storage")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_services(make_settings, runtime, clock):
    """Build services on a fresh sqlite database; call inside a running loop"""
    async def _make(**overrides) -> VMServices:
        settings = make_settings(**overrides)
        services = build_services(
            db=DatabaseManager(settings.DATABASE_URL),
            runtime=runtime,
            settings=settings,
            clock=clock,
        )
        assert await services.db.create_tables()
        return services
    return _make


@pytest.fixture
def seed_users(db_url):
    """Create tables and users synchronously, outside any app event loop"""
    def _seed(*users: Dict[str, Any]) -> List[int]:
        async def _run():
            manager = DatabaseManager(db_url)
            try:
                await manager.create_tables()
                ids = []
                for spec in users:
                    created = await create_user(manager, **spec)
                    ids.append(created.id)
                return ids
            finally:
                await manager.close()
        return asyncio.run(_run())
    return _seed
