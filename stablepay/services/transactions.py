"""Persistence of scan-to-pay attempts."""
from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import UpiTransaction, utc_now
from ..schemas import TransactionRecord, UpdateTransactionRequest
from .errors import err_already_submitted, err_not_found, err_persistence_failed

logger = logging.getLogger("stablepay.transactions")

PAYOUT_FAILED = "failed"
_NON_NULL_FLAGS = ("is_success", "payout_triggered")


class TransactionStore(Protocol):
    async def create(self, record: TransactionRecord) -> str:
        ...

    async def update(self, transaction_id: str, changes: UpdateTransactionRequest) -> TransactionRecord:
        ...

    async def get(self, transaction_id: str) -> TransactionRecord | None:
        ...


class SqlTransactionStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, record: TransactionRecord) -> str:
        row = UpiTransaction(
            upi_id=record.upi_id,
            merchant_name=record.merchant_name,
            inr_amount=str(record.inr_amount),
            total_usd_to_pay=str(record.total_usd_to_pay),
            chain_id=record.chain_id,
            wallet_address=record.wallet_address,
            txn_hash=record.txn_hash,
            is_success=record.is_success,
            scanned_at=record.scanned_at or utc_now(),
        )
        self.session.add(row)
        await self._commit()
        logger.info("transaction stored", extra={"transaction_id": row.id, "chain_id": row.chain_id})
        return row.id

    async def update(self, transaction_id: str, changes: UpdateTransactionRequest) -> TransactionRecord:
        row = await self._fetch(transaction_id)
        if row is None:
            raise err_not_found("Transaction not found")

        values = changes.model_dump(exclude_unset=True)
        # Flags are never cleared back to unknown.
        for flag in _NON_NULL_FLAGS:
            if flag in values and values[flag] is None:
                del values[flag]
        for field, value in values.items():
            setattr(row, field, value)
        if values.get("txn_hash"):
            row.paid_at = utc_now()

        await self._commit()
        await self.session.refresh(row)
        logger.info(
            "transaction updated",
            extra={"transaction_id": transaction_id, "fields": sorted(values)},
        )
        return TransactionRecord.model_validate(row)

    async def get(self, transaction_id: str) -> TransactionRecord | None:
        row = await self._fetch(transaction_id)
        return TransactionRecord.model_validate(row) if row else None

    async def list_pending_reconciliation(self) -> list[TransactionRecord]:
        """Settled attempts whose payout failed; these need out-of-band reconciliation."""

        stmt = (
            select(UpiTransaction)
            .where(
                UpiTransaction.is_success.is_(True),
                UpiTransaction.payout_triggered.is_(True),
                UpiTransaction.payout_status == PAYOUT_FAILED,
            )
            .order_by(UpiTransaction.scanned_at)
        )
        result = await self.session.execute(stmt)
        return [TransactionRecord.model_validate(row) for row in result.scalars()]

    async def _fetch(self, transaction_id: str) -> UpiTransaction | None:
        stmt = select(UpiTransaction).where(UpiTransaction.id == transaction_id).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise err_already_submitted("Transaction hash already exists") from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("transaction commit failed")
            raise err_persistence_failed() from exc
