from typing import Optional, Dict, Any, List, Callable, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
import asyncio
import functools
import logging

import docker
from docker.errors import APIError, NotFound, ImageNotFound, DockerException
from requests.exceptions import RequestException

from vmbox.config import settings
from vmbox.core.exceptions import RuntimeAdapterError, RuntimeInstanceNotFoundError
from vmbox.core.metadata import (
    ALLOWED_CAPABILITIES,
    DROPPED_CAPABILITIES,
    LABEL_MANAGED,
    RESTART_POLICY,
    SECURITY_OPTIONS,
    SSH_CONTAINER_PORT,
    WORKSPACE_MOUNT,
)
from vmbox.core.streams import DockerExecStream, TerminalStream

logger = logging.getLogger(__name__)

# docker-py lets transport errors from requests through unwrapped
DOCKER_ERRORS = (DockerException, RequestException)

@dataclass
class ContainerSpec:
    """Everything needed to create one VM container"""
    image: str
    name: str
    hostname: str
    host_port: int
    workspace_path: str
    memory_limit: int
    cpu_shares: int
    pids_limit: int
    labels: Dict[str, str] = field(default_factory=dict)
    command: List[str] = field(default_factory=lambda: ["/bin/bash"])

@dataclass
class ContainerState:
    running: bool
    status: str
    ip_address: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

def _parse_docker_time(value: Optional[str]) -> Optional[datetime]:
    """Parse Docker's RFC3339Nano timestamps into naive UTC datetimes"""
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        # Remove nanoseconds and normalize timezone
        if "." in value:
            value = value.split(".")[0]
        value = value.rstrip("Z")
        if "+" in value:
            value = value.split("+")[0]
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None

def _first_ip_address(attrs: Dict[str, Any]) -> Optional[str]:
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    for network in networks.values():
        if network and network.get("IPAddress"):
            return network["IPAddress"]
    return None

class DockerManager:
    """Runtime adapter over the Docker Engine API.

    The docker SDK is blocking, so every public method runs the SDK call in
    the default executor and is awaited by the caller.
    """

    def __init__(self, base_url: Optional[str] = None, storage_root: Optional[Path] = None):
        self.base_url = base_url or settings.DOCKER_BASE_URL
        self.storage_root = Path(storage_root or settings.STORAGE_ROOT)
        self._client = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.DockerClient(base_url=self.base_url, version="auto")
                logger.info(f"Connected to Docker at {self.base_url}")
            except DOCKER_ERRORS as e:
                logger.error(f"Failed to connect to Docker daemon: {str(e)}")
                raise RuntimeAdapterError(f"Failed to connect to Docker daemon: {str(e)}")
        return self._client

    async def _run(self, fn: Callable, *args, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _api(self, method: str, *args, **kwargs):
        """Call a low-level API method in the executor; the client connects there on first use"""
        return await self._run(lambda: getattr(self.client.api, method)(*args, **kwargs))

    async def initialize(self) -> bool:
        """Check the daemon is reachable"""
        if await self.ping():
            logger.info("Successfully pinged Docker daemon")
            return True
        logger.error("Docker daemon did not answer ping")
        return False

    async def ping(self) -> bool:
        try:
            return bool(await self._run(lambda: self.client.ping()))
        except DOCKER_ERRORS + (RuntimeAdapterError,) as e:
            logger.warning(f"Docker ping failed: {str(e)}")
            return False

    async def host_info(self) -> Dict[str, Any]:
        try:
            return await self._run(lambda: self.client.info())
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to get Docker info: {str(e)}")

    async def pull_image_if_missing(self, image: str) -> None:
        """Pull Docker image if not present locally"""
        def _pull():
            try:
                self.client.images.get(image)
                return False
            except ImageNotFound:
                logger.info(f"Pulling image: {image}")
                self.client.images.pull(image)
                return True

        try:
            await self._run(_pull)
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to pull image {image}: {str(e)}")

    def ensure_workspace(self, owner_id: str) -> str:
        """Create the owner's storage subtree and return the projects path"""
        owner_key = str(owner_id)
        if not owner_key or "/" in owner_key or owner_key in (".", ".."):
            raise RuntimeAdapterError(f"Invalid owner id for workspace: {owner_key!r}")

        user_root = (self.storage_root / "users" / owner_key).resolve()
        if not str(user_root).startswith(str(self.storage_root.resolve())):
            raise RuntimeAdapterError("Path traversal not allowed")

        try:
            for subdir in ("projects", "uploads", "backups"):
                (user_root / subdir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RuntimeAdapterError(f"Failed to create workspace for {owner_key}: {str(e)}")
        return str(user_root / "projects")

    async def create(self, spec: ContainerSpec) -> str:
        """Create a new container and return its id"""
        def _create():
            host_config = self.client.api.create_host_config(
                binds={spec.workspace_path: {"bind": WORKSPACE_MOUNT, "mode": "rw"}},
                port_bindings={SSH_CONTAINER_PORT: spec.host_port},
                mem_limit=spec.memory_limit,
                memswap_limit=spec.memory_limit,  # Prevent swap usage
                pids_limit=spec.pids_limit,
                cpu_shares=spec.cpu_shares,
                cap_drop=DROPPED_CAPABILITIES,
                cap_add=ALLOWED_CAPABILITIES,
                security_opt=SECURITY_OPTIONS,
                network_mode="bridge",
                restart_policy=RESTART_POLICY,
            )
            container = self.client.api.create_container(
                image=spec.image,
                command=spec.command,
                name=spec.name,
                hostname=spec.hostname,
                tty=True,
                stdin_open=True,
                working_dir=WORKSPACE_MOUNT,
                user="root",
                labels={**spec.labels, LABEL_MANAGED: "true"},
                ports=[SSH_CONTAINER_PORT],
                host_config=host_config,
                detach=True,
            )
            return container["Id"]

        try:
            return await self._run(_create)
        except DOCKER_ERRORS as e:
            logger.error(f"Failed to create container: {str(e)}")
            raise RuntimeAdapterError(f"Failed to create container: {str(e)}")

    async def start(self, handle: str) -> None:
        """Start a container; an already running container is not an error"""
        try:
            await self._api("start", handle)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except APIError as e:
            if e.status_code == 304:
                logger.debug(f"Container {handle} already running")
                return
            raise RuntimeAdapterError(f"Failed to start container: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to start container: {str(e)}")

    async def stop(self, handle: str, timeout: Optional[int] = None) -> None:
        """Stop a container; an already stopped container is not an error"""
        if timeout is None:
            timeout = settings.DOCKER_STOP_TIMEOUT
        try:
            await self._api("stop", handle, timeout=timeout)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except APIError as e:
            if e.status_code == 304:
                logger.debug(f"Container {handle} already stopped")
                return
            raise RuntimeAdapterError(f"Failed to stop container: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to stop container: {str(e)}")

    async def remove(self, handle: str, force: bool = True) -> None:
        """Remove a container"""
        try:
            await self._api("remove_container", handle, force=force)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to remove container: {str(e)}")

    async def inspect(self, handle: str) -> ContainerState:
        """Get container state"""
        try:
            attrs = await self._api("inspect_container", handle)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to inspect container: {str(e)}")

        state = attrs.get("State") or {}
        return ContainerState(
            running=bool(state.get("Running")),
            status=state.get("Status", "unknown"),
            ip_address=_first_ip_address(attrs),
            pid=state.get("Pid") or None,
            started_at=_parse_docker_time(state.get("StartedAt")),
            finished_at=_parse_docker_time(state.get("FinishedAt")),
        )

    async def exec_attach(self, handle: str, command: List[str], tty: bool = True) -> TerminalStream:
        """Open an interactive exec session and return its duplex stream"""
        def _attach():
            exec_id = self.client.api.exec_create(
                handle,
                command,
                stdin=True,
                stdout=True,
                stderr=True,
                tty=tty,
                user="root",
            )["Id"]
            sock = self.client.api.exec_start(exec_id, tty=tty, socket=True)
            return exec_id, sock

        try:
            exec_id, sock = await self._run(_attach)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to attach to container: {str(e)}")
        return DockerExecStream(sock, exec_id, resize_fn=self._exec_resize_sync if tty else None)

    def _exec_resize_sync(self, exec_id: str, cols: int, rows: int) -> None:
        try:
            self.client.api.exec_resize(exec_id, height=rows, width=cols)
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to resize exec {exec_id}: {str(e)}")

    async def exec_resize(self, exec_id: str, cols: int, rows: int) -> None:
        await self._run(self._exec_resize_sync, exec_id, cols, rows)

    async def exec_run(self, handle: str, command: List[str]) -> Tuple[int, str]:
        """Execute a command in a running container and return exit code and output"""
        def _exec():
            exec_id = self.client.api.exec_create(handle, command, stdout=True, stderr=True, user="root")
            output = self.client.api.exec_start(exec_id)
            info = self.client.api.exec_inspect(exec_id)
            return info.get("ExitCode") or 0, output.decode("utf-8", errors="replace")

        try:
            return await self._run(_exec)
        except NotFound as e:
            raise RuntimeInstanceNotFoundError(f"Container {handle} not found: {str(e)}")
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to execute command: {str(e)}")

    async def list_all(self, managed_only: bool = False) -> List[Dict[str, Any]]:
        """List all containers on the host"""
        filters = {"label": f"{LABEL_MANAGED}=true"} if managed_only else None
        try:
            containers = await self._api("containers", all=True, filters=filters)
        except DOCKER_ERRORS as e:
            raise RuntimeAdapterError(f"Failed to list containers: {str(e)}")
        return [
            {
                "container_id": c["Id"],
                "image": c.get("Image"),
                "names": [n.lstrip("/") for n in c.get("Names") or []],
                "state": c.get("State"),
                "status": c.get("Status"),
                "labels": c.get("Labels") or {},
                "created": c.get("Created"),
            }
            for c in containers
        ]

