"""Terminal session bridging between channels and exec streams."""

from __future__ import annotations

import asyncio
import json

from conftest import FakeChannel, create_user, settle
from vmbox.core.terminal import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_VM_NOT_FOUND,
    CLOSE_VM_NOT_RUNNING,
)


def run(make_services, scenario, **overrides):
    async def _wrapper():
        services = await make_services(**overrides)
        try:
            await scenario(services)
        finally:
            await services.terminals.stop()
            await services.db.close()
    asyncio.run(_wrapper())


async def _running_vm(services, username="alice"):
    owner = await create_user(services, username)
    vm = await services.lifecycle.provision(owner.id, "term")
    return owner, vm


def test_session_against_stopped_vm_is_rejected(make_services):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        await services.lifecycle.stop(vm.id, owner.id)

        channel = FakeChannel()
        session = await services.terminals.open_session(channel, owner.id, vm.id)
        assert session is None
        assert channel.types() == ["error"]
        assert channel.close_code == CLOSE_VM_NOT_RUNNING
        assert services.terminals.active_count() == 0

    run(make_services, scenario)


def test_session_against_unknown_or_foreign_vm_is_rejected(make_services):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        intruder = await create_user(services, "mallory")

        channel = FakeChannel()
        assert await services.terminals.open_session(channel, intruder.id, vm.id) is None
        assert channel.close_code == CLOSE_VM_NOT_FOUND

        channel = FakeChannel()
        assert await services.terminals.open_session(channel, owner.id, "nope") is None
        assert channel.close_code == CLOSE_VM_NOT_FOUND
        assert services.terminals.active_count() == 0

    run(make_services, scenario)


def test_attach_failure_closes_with_internal_error(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        runtime.fail_attach = True

        channel = FakeChannel()
        assert await services.terminals.open_session(channel, owner.id, vm.id) is None
        assert channel.types() == ["error"]
        assert channel.close_code == CLOSE_INTERNAL_ERROR
        assert services.terminals.active_count() == 0

    run(make_services, scenario)


def test_ping_gets_exactly_one_pong(make_services):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        session = await services.terminals.open_session(channel, owner.id, vm.id)
        assert channel.types() == ["connected"]

        await services.terminals.handle_message(session.session_id, json.dumps({"type": "ping"}))
        await settle()
        assert channel.types() == ["connected", "pong"]

    run(make_services, scenario)


def test_input_and_resize_reach_the_stream(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        session = await services.terminals.open_session(channel, owner.id, vm.id)
        stream = runtime.streams[-1]

        await services.terminals.handle_message(session.session_id, json.dumps({"type": "input", "data": "ls -la\n"}))
        await services.terminals.handle_message(session.session_id, json.dumps({"type": "resize", "cols": 120, "rows": 40}))
        await services.terminals.handle_message(session.session_id, json.dumps({"type": "resize", "cols": "wide"}))
        await services.terminals.handle_message(session.session_id, json.dumps({"type": "resize", "cols": 0, "rows": 10}))
        await services.terminals.handle_message(session.session_id, "not json")
        await services.terminals.handle_message(session.session_id, json.dumps({"type": "unknown"}))

        assert stream.written == [b"ls -la\n"]
        assert stream.resizes == [(120, 40)]
        assert services.terminals.active_count() == 1

    run(make_services, scenario)


def test_output_is_decoded_across_chunk_boundaries(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        await services.terminals.open_session(channel, owner.id, vm.id)
        stream = runtime.streams[-1]

        stream.feed(b"price: \xe2\x82")
        stream.feed(b"\xac\n")
        stream.feed(b"\xff")
        await settle()

        outputs = [frame["data"] for frame in channel.sent if frame["type"] == "output"]
        assert "".join(outputs) == "price: €\n�"

    run(make_services, scenario)


def test_stream_end_sends_disconnect_and_tears_down(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        await services.terminals.open_session(channel, owner.id, vm.id)
        stream = runtime.streams[-1]

        stream.end()
        await settle()

        assert channel.types() == ["connected", "disconnect"]
        assert channel.close_code == CLOSE_NORMAL
        assert stream.closed
        assert services.terminals.active_count() == 0

    run(make_services, scenario)


def test_stream_error_sends_error_and_tears_down(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        await services.terminals.open_session(channel, owner.id, vm.id)

        runtime.streams[-1].fail(RuntimeError("socket reset"))
        await settle()

        assert channel.types() == ["connected", "error"]
        assert channel.close_code == CLOSE_INTERNAL_ERROR
        assert services.terminals.active_count() == 0

    run(make_services, scenario)


def test_terminating_vm_closes_its_sessions(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        other = await services.lifecycle.provision(owner.id, "other")

        first, second, unrelated = FakeChannel(), FakeChannel(), FakeChannel()
        await services.terminals.open_session(first, owner.id, vm.id)
        await services.terminals.open_session(second, owner.id, vm.id)
        await services.terminals.open_session(unrelated, owner.id, other.id)
        assert len(services.terminals.sessions_for_vm(vm.id)) == 2

        await services.lifecycle.terminate(vm.id, owner.id)
        await settle()

        assert first.close_code == CLOSE_NORMAL
        assert second.close_code == CLOSE_NORMAL
        assert unrelated.close_code is None
        assert services.terminals.active_count() == 1

    run(make_services, scenario)


def test_sweep_purges_sessions_with_closed_channels(make_services):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        alive, dropped = FakeChannel(), FakeChannel()
        await services.terminals.open_session(alive, owner.id, vm.id)
        await services.terminals.open_session(dropped, owner.id, vm.id)

        dropped.drop()
        assert await services.terminals.sweep() == 1
        assert services.terminals.active_count() == 1
        assert await services.terminals.sweep() == 0

    run(make_services, scenario)


def test_close_session_is_idempotent(make_services, runtime):
    async def scenario(services):
        owner, vm = await _running_vm(services)
        channel = FakeChannel()
        session = await services.terminals.open_session(channel, owner.id, vm.id)

        assert await services.terminals.close_session(session.session_id) is True
        assert await services.terminals.close_session(session.session_id) is False
        assert runtime.streams[-1].closed
        await services.terminals.handle_message(session.session_id, json.dumps({"type": "ping"}))
        assert channel.types() == ["connected"]

    run(make_services, scenario)
