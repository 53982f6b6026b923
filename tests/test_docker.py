"""Docker adapter translation, with the SDK client mocked out."""

from __future__ import annotations

import asyncio
import socket
import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from vmbox.core import docker as docker_module
from vmbox.core.docker import ContainerSpec, DockerManager
from vmbox.core.exceptions import RuntimeAdapterError, RuntimeInstanceNotFoundError
from vmbox.core.metadata import LABEL_MANAGED
from vmbox.core.streams import DockerExecStream


@pytest.fixture
def manager(tmp_path):
    mgr = DockerManager(base_url="unix:///nonexistent.sock", storage_root=tmp_path)
    mgr._client = MagicMock()
    return mgr


def test_create_applies_isolation_settings(manager, tmp_path):
    api = manager._client.api
    api.create_host_config.return_value = {"host": "config"}
    api.create_container.return_value = {"Id": "deadbeef"}
    spec = ContainerSpec(
        image="ubuntu:22.04",
        name="vmbox-1-dev-abc",
        hostname="dev",
        host_port=30005,
        workspace_path=str(tmp_path / "users/1/projects"),
        memory_limit=256 * 1024 * 1024,
        cpu_shares=512,
        pids_limit=100,
        labels={"vmbox.owner": "1"},
    )

    assert asyncio.run(manager.create(spec)) == "deadbeef"

    host_kwargs = api.create_host_config.call_args.kwargs
    assert host_kwargs["port_bindings"] == {22: 30005}
    assert host_kwargs["binds"] == {spec.workspace_path: {"bind": "/workspace", "mode": "rw"}}
    assert host_kwargs["memswap_limit"] == host_kwargs["mem_limit"]
    assert host_kwargs["cap_drop"] == ["ALL"]
    assert "no-new-privileges:true" in host_kwargs["security_opt"]
    assert host_kwargs["network_mode"] == "bridge"
    assert host_kwargs["restart_policy"]["Name"] == "on-failure"

    container_kwargs = api.create_container.call_args.kwargs
    assert container_kwargs["labels"][LABEL_MANAGED] == "true"
    assert container_kwargs["labels"]["vmbox.owner"] == "1"
    assert container_kwargs["host_config"] == {"host": "config"}


def test_errors_are_translated(manager):
    api = manager._client.api
    api.inspect_container.side_effect = NotFound("gone")
    with pytest.raises(RuntimeInstanceNotFoundError):
        asyncio.run(manager.inspect("c1"))

    api.remove_container.side_effect = APIError("boom")
    with pytest.raises(RuntimeAdapterError):
        asyncio.run(manager.remove("c1"))


def test_inspect_reads_state_and_network(manager):
    manager._client.api.inspect_container.return_value = {
        "State": {
            "Running": True,
            "Status": "running",
            "Pid": 321,
            "StartedAt": "2026-01-01T10:00:00.123456789Z",
            "FinishedAt": "0001-01-01T00:00:00Z",
        },
        "NetworkSettings": {"Networks": {"bridge": {"IPAddress": "172.17.0.9"}}},
    }
    state = asyncio.run(manager.inspect("c1"))
    assert state.running is True
    assert state.pid == 321
    assert state.ip_address == "172.17.0.9"
    assert state.started_at.isoformat() == "2026-01-01T10:00:00"
    assert state.finished_at is None


def test_ensure_workspace_creates_owner_tree(manager, tmp_path):
    path = manager.ensure_workspace("7")
    assert path == str((tmp_path / "users" / "7" / "projects").resolve())
    assert (tmp_path / "users" / "7" / "uploads").is_dir()
    assert (tmp_path / "users" / "7" / "backups").is_dir()

    with pytest.raises(RuntimeAdapterError):
        manager.ensure_workspace("../escape")


def test_exec_stream_over_socket_pair():
    ours, theirs = socket.socketpair()
    resized = []
    stream = DockerExecStream(ours, "exec-1", resize_fn=lambda exec_id, cols, rows: resized.append((exec_id, cols, rows)))

    async def scenario():
        await stream.write(b"echo hi\n")
        assert theirs.recv(64) == b"echo hi\n"

        theirs.sendall(b"hi\n")
        assert await stream.read() == b"hi\n"

        await stream.resize(80, 24)
        await stream.close()
        await stream.close()
        assert await stream.read() == b""

    try:
        asyncio.run(scenario())
    finally:
        theirs.close()
    assert resized == [("exec-1", 80, 24)]
    assert stream.closed


def test_client_is_built_off_the_event_loop(tmp_path, monkeypatch):
    built_on = []

    def build_client(**kwargs):
        built_on.append(threading.current_thread())
        client = MagicMock()
        client.api.inspect_container.return_value = {"State": {"Running": False, "Status": "exited"}}
        return client

    monkeypatch.setattr(docker_module.docker, "DockerClient", build_client)
    mgr = DockerManager(base_url="unix:///nonexistent.sock", storage_root=tmp_path)

    state = asyncio.run(mgr.inspect("c1"))
    assert state.status == "exited"
    assert len(built_on) == 1
    assert built_on[0] is not threading.main_thread()
