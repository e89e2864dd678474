"""Database models and session utilities."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import settings


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UpiTransaction(Base):
    """One scan-to-pay attempt. Rows are only ever created and updated."""

    __tablename__ = "upi_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    upi_id: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Decimal amounts are stored as their exact text.
    inr_amount: Mapped[str] = mapped_column(String(32), nullable=False)
    total_usd_to_pay: Mapped[str] = mapped_column(String(32), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(64))
    txn_hash: Mapped[str | None] = mapped_column(String(80), unique=True)
    is_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_triggered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_transfer_id: Mapped[str | None] = mapped_column(String(128))
    payout_status: Mapped[str | None] = mapped_column(String(32))
    payout_failure_reason: Mapped[str | None] = mapped_column(Text)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class ScanEvent(Base):
    __tablename__ = "scan_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    qr_string: Mapped[str] = mapped_column(Text, nullable=False)
    qr_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


engine = create_async_engine(settings.database_url, future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    """Provide AsyncSession for FastAPI dependency."""

    async with SessionLocal() as session:
        yield session
