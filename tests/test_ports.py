"""Port allocation against persisted VM records."""

from __future__ import annotations

import asyncio

import pytest

from conftest import create_user
from vmbox.core.exceptions import PortExhaustedError
from vmbox.core.metadata import VMStatus
from vmbox.core.ports import PortAllocator
from vmbox.db.models import VirtualMachine


def _builder(owner_id: int, name: str = "vm"):
    def build(port: int) -> VirtualMachine:
        return VirtualMachine(
            owner_id=owner_id,
            name=name,
            status=VMStatus.CREATING.value,
            port=port,
            image="ubuntu:22.04",
            memory_limit=1024,
            cpu_shares=512,
        )
    return build


def test_reserve_hands_out_lowest_free_port(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            allocator = PortAllocator(services.db, 31000, 31004)
            first = await allocator.reserve(_builder(owner.id, "a"))
            second = await allocator.reserve(_builder(owner.id, "b"))
            assert (first.port, second.port) == (31000, 31001)

            async with services.db.session() as session:
                assert await allocator.release(session, first.id, first.port)
            third = await allocator.reserve(_builder(owner.id, "c"))
            assert third.port == 31000
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_reserve_skips_reserved_ports_and_exhausts(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            allocator = PortAllocator(services.db, 31000, 31002, reserved_ports=[31000, 31001])
            assert allocator.capacity == 1
            record = await allocator.reserve(_builder(owner.id))
            assert record.port == 31002
            with pytest.raises(PortExhaustedError):
                await allocator.reserve(_builder(owner.id))
            assert await allocator.usage() == (1, 1)
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_concurrent_reservations_never_share_a_port(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            allocator = PortAllocator(services.db, 31000, 31009)
            records = await asyncio.gather(
                *(allocator.reserve(_builder(owner.id, f"vm-{i}")) for i in range(6))
            )
            ports = [r.port for r in records]
            assert len(set(ports)) == 6
            assert sorted(ports) == list(range(31000, 31006))
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_allocator_sees_ports_persisted_by_another_instance(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            first = PortAllocator(services.db, 31000, 31009)
            await first.reserve(_builder(owner.id, "a"))
            # A restarted process starts with no in-memory state
            restarted = PortAllocator(services.db, 31000, 31009)
            record = await restarted.reserve(_builder(owner.id, "b"))
            assert record.port == 31001
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_release_without_port_is_a_no_op(make_services):
    async def scenario():
        services = await make_services()
        try:
            allocator = PortAllocator(services.db, 31000, 31009)
            async with services.db.session() as session:
                assert await allocator.release(session, "missing", None) is False
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_invalid_range_is_rejected():
    with pytest.raises(ValueError):
        PortAllocator(None, 31010, 31000)
