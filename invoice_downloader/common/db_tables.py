from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()


invoice_metadata = sa.Table(
    "invoice_metadata",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("vendor_id", sa.String(length=64), nullable=False),
    sa.Column("invoice_number", sa.String(length=128), nullable=False),
    sa.Column("issue_date", sa.Date(), nullable=False),
    sa.Column("amount", sa.Numeric(14, 2), nullable=False),
    sa.Column("currency", sa.String(length=8), nullable=False),
    sa.Column("downloaded_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("file_name", sa.Text(), nullable=False),
    sa.Column("storage_path", sa.Text(), nullable=False),
    sa.Column("extra", sa.JSON(), nullable=True),
    sa.UniqueConstraint("vendor_id", "invoice_number", name="uq_invoice_metadata_vendor_invoice"),
)
