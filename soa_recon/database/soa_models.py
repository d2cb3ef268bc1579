"""
SOA Reconciliation Database Models

Tables:
- soa_cases: reconciliation cases (one per vendor statement)
- soa_lines: statement lines claimed by the vendor
- ledger_records: internal invoice / payment ledger (read-only for the engine)
- soa_matches: proposed and decided line-to-ledger matches
- soa_discrepancies: flagged inconsistencies
- soa_acknowledgements: sign-off records with a summary snapshot

Status / type columns hold the string values of the enums in
soa_recon.reconciliation.registry.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, JSON, Numeric, text
)

from soa_recon.database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SOACaseDB(Base):
    """A reconciliation case for one vendor statement."""
    __tablename__ = "soa_cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    vendor_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="open", index=True)
    statement_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)


class SOALineDB(Base):
    """One claimed open item on a vendor statement."""
    __tablename__ = "soa_lines"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("soa_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = Column(String(36), nullable=False, index=True)

    line_number = Column(Integer, nullable=True)
    invoice_number = Column(String(100), nullable=True, index=True)
    invoice_date = Column(Date, nullable=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    description = Column(Text, nullable=True)
    reference_number = Column(String(100), nullable=True)
    # Line opts in to partial-settlement matching
    allow_partial = Column(Boolean, nullable=False, default=False)

    # extracted | matched | disputed
    status = Column(String(20), nullable=False, default="extracted", index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_soa_lines_case_status', 'case_id', 'status'),
        Index('ix_soa_lines_case_line_number', 'case_id', 'line_number'),
    )


class LedgerRecordDB(Base):
    """Internal invoice or payment entry."""
    __tablename__ = "ledger_records"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    vendor_id = Column(String(36), nullable=False, index=True)

    invoice_number = Column(String(100), nullable=True, index=True)
    invoice_date = Column(Date, nullable=True)
    amount = Column(Numeric(18, 2), nullable=False)
    total_amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_ledger_records_vendor_currency', 'vendor_id', 'currency'),
    )


class SOAMatchDB(Base):
    """
    Association between one SOA line and one ledger record.

    At most one non-rejected row per soa_item_id, enforced by a partial
    unique index.
    """
    __tablename__ = "soa_matches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("soa_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    soa_item_id = Column(String(36), ForeignKey("soa_lines.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("ledger_records.id"), nullable=False, index=True)

    match_type = Column(String(20), nullable=False)
    is_exact_match = Column(Boolean, nullable=False, default=False)
    confidence = Column(Float, nullable=False, default=0.0)
    match_score = Column(Integer, nullable=False, default=0)
    match_criteria = Column(JSON, nullable=False, default=dict)

    soa_amount = Column(Numeric(18, 2), nullable=True)
    invoice_amount = Column(Numeric(18, 2), nullable=True)
    amount_difference = Column(Numeric(18, 2), nullable=True)
    soa_date = Column(Date, nullable=True)
    invoice_date = Column(Date, nullable=True)

    # pending | confirmed | rejected
    status = Column(String(20), nullable=False, default="pending", index=True)
    matched_by = Column(String(20), nullable=False, default="system")
    confirmed_by = Column(String(36), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            'uq_soa_matches_active_line',
            'soa_item_id',
            unique=True,
            sqlite_where=text("status <> 'rejected'"),
            postgresql_where=text("status <> 'rejected'"),
        ),
        Index('ix_soa_matches_case_status', 'case_id', 'status'),
    )


class SOADiscrepancyDB(Base):
    """Flagged inconsistency, optionally tied to one SOA line."""
    __tablename__ = "soa_discrepancies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("soa_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    soa_item_id = Column(String(36), nullable=True, index=True)
    match_id = Column(String(36), nullable=True)
    invoice_id = Column(String(36), nullable=True)
    related_soa_item_ids = Column(JSON, nullable=False, default=list)

    discrepancy_type = Column(String(30), nullable=False, index=True)
    severity = Column(String(10), nullable=False, default="medium")
    description = Column(Text, nullable=False, default="")
    amount_delta = Column(Numeric(18, 2), nullable=True)

    # open | resolved
    status = Column(String(20), nullable=False, default="open", index=True)
    detected_by = Column(String(20), nullable=False, default="system")
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolution_action = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_soa_discrepancies_case_status', 'case_id', 'status'),
        Index('ix_soa_discrepancies_item_type', 'soa_item_id', 'discrepancy_type'),
    )


class SOAAcknowledgementDB(Base):
    """Sign-off record. One per case."""
    __tablename__ = "soa_acknowledgements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("soa_cases.id", ondelete="CASCADE"), nullable=False, unique=True)
    vendor_id = Column(String(36), nullable=False, index=True)

    acknowledged_by = Column(String(36), nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), default=utc_now)
    acknowledgement_type = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)

    # Summary snapshot at sign-off
    total_lines = Column(Integer, nullable=False, default=0)
    matched_lines = Column(Integer, nullable=False, default=0)
    pending_lines = Column(Integer, nullable=False, default=0)
    discrepancy_lines = Column(Integer, nullable=False, default=0)
    unmatched_lines = Column(Integer, nullable=False, default=0)
    open_discrepancies = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(18, 2), nullable=False, default=0)
    matched_amount = Column(Numeric(18, 2), nullable=False, default=0)
    pending_amount = Column(Numeric(18, 2), nullable=False, default=0)
    discrepancy_amount = Column(Numeric(18, 2), nullable=False, default=0)
    unmatched_amount = Column(Numeric(18, 2), nullable=False, default=0)
    net_variance = Column(Numeric(18, 2), nullable=False, default=0)


__all__ = [
    'generate_uuid',
    'utc_now',
    'SOACaseDB',
    'SOALineDB',
    'LedgerRecordDB',
    'SOAMatchDB',
    'SOADiscrepancyDB',
    'SOAAcknowledgementDB',
]
