from datetime import datetime
from typing import Callable, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from vmbox.core.exceptions import (
    CreditRequestNotFoundError,
    InvalidStateError,
    QuotaExceededError,
    UserNotFoundError,
)
from vmbox.core.metadata import (
    CREDIT_REQUEST_MAX_AMOUNT,
    CREDIT_REQUEST_MAX_TEXT,
    CREDIT_REQUEST_MIN_AMOUNT,
    CREDIT_REQUEST_MIN_REASON,
    MAX_PENDING_CREDIT_REQUESTS,
    SECONDS_PER_HOUR,
    CreditRequestStatus,
    utcnow,
)
from vmbox.db.database import DatabaseManager, credit_request_repository, user_repository
from vmbox.db.models import CreditRequest
from vmbox.monitor.metrics import credits_charged

logger = logging.getLogger(__name__)

class CreditMeter:
    """Time-based billing against user balances.

    The balance is only ever lowered through :meth:`charge` and
    :meth:`adjust`, both of which floor it at zero in a single UPDATE.
    """

    def __init__(self, db: DatabaseManager, hourly_rate: int):
        if hourly_rate < 0:
            raise ValueError("Hourly rate must not be negative")
        self.db = db
        self.hourly_rate = hourly_rate

    def compute_charge(self, elapsed_seconds: int) -> int:
        """ceil(elapsed hours * hourly rate), in whole credits"""
        elapsed_seconds = max(0, int(elapsed_seconds))
        return -(-elapsed_seconds * self.hourly_rate // SECONDS_PER_HOUR)

    async def charge(self, session: AsyncSession, owner_id: int, elapsed_seconds: int) -> int:
        """Debit the owner for a running interval inside the caller's transaction"""
        amount = self.compute_charge(elapsed_seconds)
        if amount > 0:
            if not await user_repository.debit_with_floor(session, owner_id, amount):
                logger.warning(f"Charged {amount} credits to missing user {owner_id}")
            else:
                credits_charged.inc(amount)
                logger.info(f"Charged user {owner_id} {amount} credits for {elapsed_seconds}s")
        return amount

    async def balance(self, owner_id: int) -> int:
        async with self.db.session() as session:
            credits = await user_repository.get_credits(session, owner_id)
        if credits is None:
            raise UserNotFoundError(f"User {owner_id} not found")
        return credits

    async def has_sufficient_balance(self, owner_id: int, minimum_units: int) -> bool:
        try:
            return await self.balance(owner_id) >= minimum_units
        except UserNotFoundError:
            return False

    async def grant(self, session: AsyncSession, owner_id: int, amount: int) -> None:
        """Add credits inside the caller's transaction"""
        if not await user_repository.add_credits(session, owner_id, amount):
            raise UserNotFoundError(f"User {owner_id} not found")

    async def adjust(self, owner_id: int, amount: int, operation: str = "add") -> int:
        """Administrative add/remove; removal is floored at zero like billing"""
        if amount <= 0:
            raise ValueError("Amount must be a positive number")
        if operation not in ("add", "remove"):
            raise ValueError(f"Unknown credit operation: {operation}")

        async with self.db.session() as session:
            if operation == "add":
                await self.grant(session, owner_id, amount)
            elif not await user_repository.debit_with_floor(session, owner_id, amount):
                raise UserNotFoundError(f"User {owner_id} not found")
            credits = await user_repository.get_credits(session, owner_id)

        logger.info(f"Credits {operation} {amount} for user {owner_id}, balance now {credits}")
        return credits

class CreditRequestManager:
    """User requests for more credits, reviewed by an admin.

    Approval and the balance top-up happen in one transaction, and a request
    can only be decided once.
    """

    def __init__(
        self,
        db: DatabaseManager,
        meter: CreditMeter,
        max_pending: int = MAX_PENDING_CREDIT_REQUESTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.meter = meter
        self.max_pending = max_pending
        self.clock = clock

    async def submit(self, user_id: int, amount: int, reason: str) -> CreditRequest:
        reason = (reason or "").strip()
        if not CREDIT_REQUEST_MIN_AMOUNT <= amount <= CREDIT_REQUEST_MAX_AMOUNT:
            raise ValueError(
                f"Amount must be between {CREDIT_REQUEST_MIN_AMOUNT} and {CREDIT_REQUEST_MAX_AMOUNT}"
            )
        if len(reason) < CREDIT_REQUEST_MIN_REASON:
            raise ValueError(f"Please provide a reason (at least {CREDIT_REQUEST_MIN_REASON} characters)")
        if len(reason) > CREDIT_REQUEST_MAX_TEXT:
            raise ValueError(f"Reason cannot exceed {CREDIT_REQUEST_MAX_TEXT} characters")

        async with self.db.session() as session:
            pending = await credit_request_repository.count_pending(session, user_id)
            if pending >= self.max_pending:
                raise QuotaExceededError(
                    "Too many pending credit requests, wait for them to be processed"
                )
            request = await credit_request_repository.create(
                session, user_id=user_id, amount=amount, reason=reason
            )

        logger.info(f"User {user_id} requested {amount} credits (request {request.id})")
        return request

    async def list_for_user(self, user_id: int) -> List[CreditRequest]:
        async with self.db.session() as session:
            return await credit_request_repository.list_for_user(session, user_id)

    async def list_all(self, status: Optional[str] = None) -> List[CreditRequest]:
        if status is not None and status not in [s.value for s in CreditRequestStatus]:
            raise ValueError(f"Unknown credit request status: {status}")
        async with self.db.session() as session:
            return await credit_request_repository.list_all(session, status)

    async def cancel(self, user_id: int, request_id: int) -> None:
        async with self.db.session() as session:
            if not await credit_request_repository.delete_pending(session, request_id, user_id):
                raise CreditRequestNotFoundError(f"Pending credit request {request_id} not found")
        logger.info(f"User {user_id} cancelled credit request {request_id}")

    async def review(
        self,
        request_id: int,
        reviewer_id: Optional[int],
        action: str,
        note: Optional[str] = None,
    ) -> CreditRequest:
        """Approve or deny a pending request; approval credits the requester"""
        if action not in ("approve", "deny"):
            raise ValueError('Action must be "approve" or "deny"')
        if note and len(note) > CREDIT_REQUEST_MAX_TEXT:
            raise ValueError(f"Review note cannot exceed {CREDIT_REQUEST_MAX_TEXT} characters")
        decided = CreditRequestStatus.APPROVED if action == "approve" else CreditRequestStatus.DENIED

        async with self.db.session() as session:
            request = await credit_request_repository.get(session, request_id)
            if request is None:
                raise CreditRequestNotFoundError(f"Credit request {request_id} not found")
            applied = await credit_request_repository.review(
                session,
                request_id,
                status=decided.value,
                reviewed_by=reviewer_id,
                reviewed_at=self.clock(),
                review_note=note.strip() if note else None,
            )
            if not applied:
                raise InvalidStateError(
                    f"Credit request {request_id} has already been processed", request.status
                )
            if decided == CreditRequestStatus.APPROVED:
                await self.meter.grant(session, request.user_id, request.amount)
            request = await credit_request_repository.get(session, request_id)

        logger.info(f"Credit request {request_id} {decided.value} by user {reviewer_id}")
        return request
