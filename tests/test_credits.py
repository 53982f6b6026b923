"""Credit metering and balance adjustments."""

from __future__ import annotations

import asyncio

import pytest

from conftest import create_user
from vmbox.core.credits import CreditMeter
from vmbox.core.exceptions import (
    CreditRequestNotFoundError,
    InvalidStateError,
    QuotaExceededError,
    UserNotFoundError,
)
from vmbox.core.metadata import UserRole


@pytest.mark.parametrize(
    "elapsed, expected",
    [(0, 0), (1, 1), (360, 1), (361, 2), (1800, 5), (3600, 10), (-5, 0)],
)
def test_compute_charge_rounds_up_to_whole_credits(elapsed, expected):
    meter = CreditMeter(None, hourly_rate=10)
    assert meter.compute_charge(elapsed) == expected


def test_zero_rate_never_charges():
    assert CreditMeter(None, hourly_rate=0).compute_charge(10_000) == 0


def test_charge_floors_balance_at_zero(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services, credits=3)
            async with services.db.session() as session:
                charged = await services.credits.charge(session, owner.id, 3600)
            assert charged == 10
            assert await services.credits.balance(owner.id) == 0
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_has_sufficient_balance(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services, credits=10)
            assert await services.credits.has_sufficient_balance(owner.id, 10)
            assert not await services.credits.has_sufficient_balance(owner.id, 11)
            assert not await services.credits.has_sufficient_balance(9999, 1)
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_adjust_adds_and_removes_with_floor(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services, credits=20)
            assert await services.credits.adjust(owner.id, 5) == 25
            assert await services.credits.adjust(owner.id, 100, "remove") == 0

            with pytest.raises(ValueError):
                await services.credits.adjust(owner.id, 0)
            with pytest.raises(ValueError):
                await services.credits.adjust(owner.id, 5, "multiply")
            with pytest.raises(UserNotFoundError):
                await services.credits.adjust(9999, 5)
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_credit_request_approval_tops_up_balance_once(make_services, clock):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services, credits=5)
            admin = await create_user(services, username="root", role=UserRole.ADMIN.value)
            manager = services.credit_requests

            request = await manager.submit(owner.id, 50, "  need more time for the build  ")
            assert request.status == "pending"
            assert request.reason == "need more time for the build"

            approved = await manager.review(request.id, admin.id, "approve", note="ok")
            assert approved.status == "approved"
            assert approved.reviewed_by == admin.id
            assert approved.reviewed_at == clock.now
            assert await services.credits.balance(owner.id) == 55

            with pytest.raises(InvalidStateError):
                await manager.review(request.id, admin.id, "approve")
            with pytest.raises(InvalidStateError):
                await manager.review(request.id, admin.id, "deny")
            assert await services.credits.balance(owner.id) == 55
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_denied_request_leaves_balance_alone(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services, credits=5)
            request = await services.credit_requests.submit(owner.id, 20, "running a long experiment")
            denied = await services.credit_requests.review(request.id, None, "deny")
            assert denied.status == "denied"
            assert await services.credits.balance(owner.id) == 5

            with pytest.raises(CreditRequestNotFoundError):
                await services.credit_requests.review(9999, None, "approve")
            with pytest.raises(ValueError):
                await services.credit_requests.review(request.id, None, "maybe")
        finally:
            await services.db.close()

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "amount, reason",
    [(0, "a perfectly good reason"), (1001, "a perfectly good reason"), (10, "too short"), (10, "   short    ")],
)
def test_invalid_credit_requests_are_rejected(make_services, amount, reason):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            with pytest.raises(ValueError):
                await services.credit_requests.submit(owner.id, amount, reason)
            assert await services.credit_requests.list_for_user(owner.id) == []
        finally:
            await services.db.close()

    asyncio.run(scenario())


def test_pending_requests_are_capped_and_cancellable(make_services):
    async def scenario():
        services = await make_services()
        try:
            owner = await create_user(services)
            other = await create_user(services, username="bob")
            manager = services.credit_requests
            requests = [await manager.submit(owner.id, 10, f"request number {i}") for i in range(3)]

            with pytest.raises(QuotaExceededError):
                await manager.submit(owner.id, 10, "one request too many")

            with pytest.raises(CreditRequestNotFoundError):
                await manager.cancel(other.id, requests[0].id)
            await manager.cancel(owner.id, requests[0].id)
            with pytest.raises(CreditRequestNotFoundError):
                await manager.cancel(owner.id, requests[0].id)

            await manager.review(requests[1].id, None, "approve")
            with pytest.raises(CreditRequestNotFoundError):
                await manager.cancel(owner.id, requests[1].id)

            await manager.submit(owner.id, 10, "room for another one")
            listed = await manager.list_for_user(owner.id)
            assert len(listed) == 3
            assert [r.status for r in await manager.list_all("pending")] == ["pending", "pending"]
            with pytest.raises(ValueError):
                await manager.list_all("unknown")
        finally:
            await services.db.close()

    asyncio.run(scenario())
