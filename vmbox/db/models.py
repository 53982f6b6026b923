from datetime import datetime
from typing import Optional
from uuid import uuid4
from sqlalchemy import DateTime, String, Integer, BigInteger, ForeignKey, Boolean, CheckConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from vmbox.config import settings
from vmbox.core.metadata import CreditRequestStatus, UserRole, VMStatus, utcnow

class Base(DeclarativeBase):
    pass

def _new_vm_id() -> str:
    return uuid4().hex

class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(50), unique=True)
    api_key: Mapped[str] = mapped_column(String(64), unique=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.MEMBER.value)
    credits: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_CREDITS)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    vms: Mapped[list["VirtualMachine"]] = relationship(back_populates="owner")
    credit_requests: Mapped[list["CreditRequest"]] = relationship(
        back_populates="user", foreign_keys="CreditRequest.user_id"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

class VirtualMachine(Base):
    __tablename__ = "virtual_machines"
    __table_args__ = (
        Index("ix_virtual_machines_owner_status", "owner_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_vm_id)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    runtime_handle: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String(63))
    status: Mapped[str] = mapped_column(String(20), default=VMStatus.CREATING.value)
    # NULL once released; unique among the records still holding one
    port: Mapped[Optional[int]] = mapped_column(Integer, unique=True, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    image: Mapped[str] = mapped_column(String(255))
    memory_limit: Mapped[int] = mapped_column(BigInteger)  # bytes
    cpu_shares: Mapped[int] = mapped_column(Integer)
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    terminated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_runtime_seconds: Mapped[int] = mapped_column(BigInteger, default=0)
    credits_consumed: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    owner: Mapped[User] = relationship(back_populates="vms")

class CreditRequest(Base):
    __tablename__ = "credit_requests"
    __table_args__ = (
        Index("ix_credit_requests_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20), default=CreditRequestStatus.PENDING.value)
    reviewed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    review_note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped[User] = relationship(back_populates="credit_requests", foreign_keys=[user_id])
