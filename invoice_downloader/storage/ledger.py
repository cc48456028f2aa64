from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from invoice_downloader.common.db import create_schema, dispose_engine, session_scope
from invoice_downloader.common.db_tables import invoice_metadata
from invoice_downloader.common.json_logger import JsonLogger, log_event

__all__ = ["InvoiceRecord", "InvoiceLedger", "StorageError"]


class StorageError(RuntimeError):
    """Raised when an invoice artifact or ledger row cannot be stored or read."""


@dataclass(frozen=True)
class InvoiceRecord:
    vendor_id: str
    invoice_number: str
    issue_date: date
    amount: Decimal
    currency: str
    file_name: str
    storage_path: str
    downloaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "invoice_number": self.invoice_number,
            "issue_date": self.issue_date,
            "amount": self.amount,
            "currency": self.currency,
            "downloaded_at": self.downloaded_at,
            "file_name": self.file_name,
            "storage_path": self.storage_path,
            "extra": dict(self.extra) or None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InvoiceRecord":
        downloaded_at = row["downloaded_at"]
        # SQLite drops tzinfo on the way back.
        if downloaded_at.tzinfo is None:
            downloaded_at = downloaded_at.replace(tzinfo=timezone.utc)
        return cls(
            vendor_id=row["vendor_id"],
            invoice_number=row["invoice_number"],
            issue_date=row["issue_date"],
            amount=Decimal(str(row["amount"])),
            currency=row["currency"],
            file_name=row["file_name"],
            storage_path=row["storage_path"],
            downloaded_at=downloaded_at,
            extra=dict(row["extra"] or {}),
        )

    def as_dict(self) -> Dict[str, Any]:
        payload = self.to_row()
        payload["issue_date"] = self.issue_date.isoformat()
        payload["amount"] = str(self.amount)
        payload["downloaded_at"] = self.downloaded_at.isoformat()
        payload["extra"] = dict(self.extra)
        return payload


class InvoiceLedger:
    """Append-only invoice metadata keyed by ``(vendor_id, invoice_number)``."""

    def __init__(self, database_url: str, *, logger: JsonLogger | None = None) -> None:
        self.database_url = database_url
        self.logger = logger

    async def initialize(self) -> None:
        try:
            await create_schema(self.database_url)
        except SQLAlchemyError as exc:
            raise StorageError(f"unable to prepare invoice ledger: {exc}") from exc

    async def append(self, record: InvoiceRecord) -> InvoiceRecord:
        try:
            async with session_scope(self.database_url) as session:
                async with session.begin():
                    await session.execute(sa.insert(invoice_metadata).values(**record.to_row()))
        except IntegrityError as exc:
            raise StorageError(
                f"invoice {record.invoice_number} already recorded for {record.vendor_id}"
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"unable to record invoice {record.invoice_number}: {exc}") from exc

        if self.logger is not None:
            log_event(
                logger=self.logger,
                phase="ledger",
                message="Invoice recorded",
                vendor_id=record.vendor_id,
                invoice_number=record.invoice_number,
                storage_path=record.storage_path,
            )
        return record

    async def exists(self, vendor_id: str, invoice_number: str) -> bool:
        stmt = (
            sa.select(invoice_metadata.c.id)
            .where(invoice_metadata.c.vendor_id == vendor_id)
            .where(invoice_metadata.c.invoice_number == invoice_number)
            .limit(1)
        )
        try:
            async with session_scope(self.database_url) as session:
                result = await session.execute(stmt)
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            raise StorageError(f"unable to query invoice ledger: {exc}") from exc

    async def _select(self, stmt: sa.Select) -> List[InvoiceRecord]:
        try:
            async with session_scope(self.database_url) as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"unable to query invoice ledger: {exc}") from exc
        return [InvoiceRecord.from_row(row) for row in rows]

    async def list_by_vendor(self, vendor_id: str) -> List[InvoiceRecord]:
        stmt = (
            sa.select(invoice_metadata)
            .where(invoice_metadata.c.vendor_id == vendor_id)
            .order_by(invoice_metadata.c.issue_date.desc(), invoice_metadata.c.id.desc())
        )
        return await self._select(stmt)

    async def list_all(self) -> List[InvoiceRecord]:
        stmt = sa.select(invoice_metadata).order_by(
            invoice_metadata.c.vendor_id, invoice_metadata.c.issue_date.desc(), invoice_metadata.c.id.desc()
        )
        return await self._select(stmt)

    async def close(self) -> None:
        await dispose_engine(self.database_url)
