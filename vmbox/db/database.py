from typing import AsyncGenerator, Any, Iterable, List, Optional, Union
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy import case, delete, func, select, text, update
from vmbox.config import settings
from vmbox.core.metadata import ACTIVE_STATUSES, CreditRequestStatus, VMStatus
from vmbox.db.models import Base, CreditRequest, User, VirtualMachine
import logging

logger = logging.getLogger(__name__)

class DatabaseManager:
    """Owns the async engine and hands out transactional sessions"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.DATABASE_URL
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    def _engine_options(self) -> dict:
        options = {"echo": settings.DEBUG}
        if not self.url.startswith("sqlite"):
            options.update(
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_recycle=settings.DB_POOL_RECYCLE,
                pool_pre_ping=True,
            )
        return options

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, **self._engine_options())
        return self._engine

    @property
    def sessionmaker(self) -> async_sessionmaker:
        if self._sessionmaker is None:
            self._sessionmaker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )
        return self._sessionmaker

    async def initialize(self) -> bool:
        """Initialize database connection"""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Failed to initialize database: {str(e)}")
            return False

    async def create_tables(self) -> bool:
        """Create all tables"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return True
        except Exception as e:
            logger.error(f"Failed to create tables: {str(e)}")
            return False

    async def drop_tables(self) -> None:
        """Drop all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def check_connection(self) -> bool:
        """Check database connection"""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session: commit on success, rollback on any error"""
        session = self.sessionmaker()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self) -> None:
        """Close database connection"""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

class Repository:
    """Base repository class with common CRUD operations"""

    def __init__(self, model: Any):
        self.model = model

    async def create(self, session: AsyncSession, **kwargs) -> Any:
        """Create new record"""
        obj = self.model(**kwargs)
        session.add(obj)
        await session.flush()
        return obj

    async def get(self, session: AsyncSession, id: Any) -> Any:
        """Get record by ID, refreshed from the database"""
        stmt = (
            select(self.model)
            .where(self.model.id == id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, session: AsyncSession, id: Any) -> bool:
        """Delete record"""
        obj = await self.get(session, id)
        if obj:
            await session.delete(obj)
            await session.flush()
            return True
        return False

class UserRepository(Repository):
    def __init__(self):
        super().__init__(User)

    async def get_by_api_key(self, session: AsyncSession, api_key: str) -> Optional[User]:
        stmt = select(User).where(User.api_key == api_key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count(User.id)))
        return int(result.scalar_one())

    async def get_credits(self, session: AsyncSession, user_id: int) -> Optional[int]:
        stmt = select(User.credits).where(User.id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def debit_with_floor(self, session: AsyncSession, user_id: int, amount: int) -> bool:
        """Atomically subtract amount from the balance, never going below zero"""
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=case((User.credits >= amount, User.credits - amount), else_=0))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def add_credits(self, session: AsyncSession, user_id: int, amount: int) -> bool:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

class VMRepository(Repository):
    def __init__(self):
        super().__init__(VirtualMachine)

    async def get_owned(self, session: AsyncSession, vm_id: str, owner_id: int) -> Optional[VirtualMachine]:
        stmt = (
            select(VirtualMachine)
            .where(VirtualMachine.id == vm_id, VirtualMachine.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_handle(self, session: AsyncSession, handle: str) -> Optional[VirtualMachine]:
        stmt = (
            select(VirtualMachine)
            .where(VirtualMachine.runtime_handle == handle)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_owner(self, session: AsyncSession, owner_id: int) -> List[VirtualMachine]:
        stmt = (
            select(VirtualMachine)
            .where(VirtualMachine.owner_id == owner_id)
            .order_by(VirtualMachine.created_at.desc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(self, session: AsyncSession) -> List[VirtualMachine]:
        stmt = select(VirtualMachine).order_by(VirtualMachine.created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self, session: AsyncSession) -> List[VirtualMachine]:
        stmt = select(VirtualMachine).where(
            VirtualMachine.status.in_([s.value for s in ACTIVE_STATUSES])
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_active_for_owner(self, session: AsyncSession, owner_id: int) -> int:
        stmt = select(func.count(VirtualMachine.id)).where(
            VirtualMachine.owner_id == owner_id,
            VirtualMachine.status != VMStatus.TERMINATED.value,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def count_by_status(self, session: AsyncSession) -> dict:
        stmt = select(VirtualMachine.status, func.count(VirtualMachine.id)).group_by(VirtualMachine.status)
        result = await session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def used_ports(self, session: AsyncSession) -> set:
        stmt = select(VirtualMachine.port).where(VirtualMachine.port.is_not(None))
        result = await session.execute(stmt)
        return set(result.scalars().all())

    async def transition(
        self,
        session: AsyncSession,
        vm_id: str,
        expected: Union[str, Iterable[str]],
        **values
    ) -> bool:
        """Apply values only if the persisted status is still one of expected"""
        if isinstance(expected, str):
            expected = [expected]
        stmt = (
            update(VirtualMachine)
            .where(VirtualMachine.id == vm_id, VirtualMachine.status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def delete_if_status(self, session: AsyncSession, vm_id: str, expected: str) -> bool:
        """Delete the record only while it is still in the expected status"""
        stmt = (
            delete(VirtualMachine)
            .where(VirtualMachine.id == vm_id, VirtualMachine.status == expected)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def clear_port(self, session: AsyncSession, vm_id: str, port: int) -> bool:
        stmt = (
            update(VirtualMachine)
            .where(VirtualMachine.id == vm_id, VirtualMachine.port == port)
            .values(port=None)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

class CreditRequestRepository(Repository):
    def __init__(self):
        super().__init__(CreditRequest)

    async def list_for_user(self, session: AsyncSession, user_id: int, limit: int = 50) -> List[CreditRequest]:
        stmt = (
            select(CreditRequest)
            .where(CreditRequest.user_id == user_id)
            .order_by(CreditRequest.created_at.desc(), CreditRequest.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self, session: AsyncSession, status: Optional[str] = None) -> List[CreditRequest]:
        stmt = select(CreditRequest).order_by(CreditRequest.created_at.desc(), CreditRequest.id.desc())
        if status:
            stmt = stmt.where(CreditRequest.status == status)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_pending(self, session: AsyncSession, user_id: Optional[int] = None) -> int:
        stmt = select(func.count(CreditRequest.id)).where(
            CreditRequest.status == CreditRequestStatus.PENDING.value
        )
        if user_id is not None:
            stmt = stmt.where(CreditRequest.user_id == user_id)
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def delete_pending(self, session: AsyncSession, request_id: int, user_id: int) -> bool:
        stmt = (
            delete(CreditRequest)
            .where(
                CreditRequest.id == request_id,
                CreditRequest.user_id == user_id,
                CreditRequest.status == CreditRequestStatus.PENDING.value,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def review(self, session: AsyncSession, request_id: int, **values) -> bool:
        """Record a decision only if the request is still pending"""
        stmt = (
            update(CreditRequest)
            .where(
                CreditRequest.id == request_id,
                CreditRequest.status == CreditRequestStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

# Initialize repositories
user_repository = UserRepository()
vm_repository = VMRepository()
credit_request_repository = CreditRequestRepository()
