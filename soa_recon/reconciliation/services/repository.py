"""
SOA Line Repository

Typed accessors over the SOA tables. Uses SQLAlchemy async sessions and
converts rows to the domain dataclasses in reconciliation.models.

The repository flushes but never commits: the reconciliation service
owns the transaction boundary so each operation commits or rolls back
as a unit.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from soa_recon.database.soa_models import (
    SOACaseDB, SOALineDB, LedgerRecordDB, SOAMatchDB,
    SOADiscrepancyDB, SOAAcknowledgementDB, generate_uuid
)
from soa_recon.reconciliation.models import (
    Acknowledgement, CaseRecord, CaseSummary, Discrepancy, LedgerRecord,
    Match, MatchCriteria, SOALine
)
from soa_recon.reconciliation.registry import (
    AcknowledgementType, CaseStatus, DetectedBy, DiscrepancyStatus,
    DiscrepancyType, LineStatus, MatchedBy, MatchStatus, MatchType,
    ResolutionAction, Severity
)

logger = logging.getLogger(__name__)


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ==================== CONVERSION HELPERS ====================

def db_to_case(db_obj: SOACaseDB) -> CaseRecord:
    """Convert database model to domain record"""
    return CaseRecord(
        id=db_obj.id,
        vendor_id=db_obj.vendor_id,
        status=CaseStatus(db_obj.status),
        created_at=db_obj.created_at,
    )


def db_to_line(db_obj: SOALineDB) -> SOALine:
    """Convert database model to domain record"""
    return SOALine(
        id=db_obj.id,
        case_id=db_obj.case_id,
        vendor_id=db_obj.vendor_id,
        amount=_decimal(db_obj.amount),
        currency=db_obj.currency,
        invoice_number=db_obj.invoice_number,
        invoice_date=db_obj.invoice_date,
        status=LineStatus(db_obj.status),
        line_number=db_obj.line_number,
        description=db_obj.description,
        reference_number=db_obj.reference_number,
        allow_partial=bool(db_obj.allow_partial),
    )


def db_to_ledger_record(db_obj: LedgerRecordDB) -> LedgerRecord:
    """Convert database model to domain record"""
    return LedgerRecord(
        id=db_obj.id,
        vendor_id=db_obj.vendor_id,
        amount=_decimal(db_obj.amount),
        currency=db_obj.currency,
        total_amount=_decimal(db_obj.total_amount),
        invoice_number=db_obj.invoice_number,
        invoice_date=db_obj.invoice_date,
    )


def db_to_match(db_obj: SOAMatchDB) -> Match:
    """Convert database model to domain record"""
    return Match(
        id=db_obj.id,
        case_id=db_obj.case_id,
        soa_item_id=db_obj.soa_item_id,
        invoice_id=db_obj.invoice_id,
        match_type=MatchType(db_obj.match_type),
        is_exact_match=bool(db_obj.is_exact_match),
        confidence=float(db_obj.confidence),
        match_score=int(db_obj.match_score),
        match_criteria=MatchCriteria.from_dict(db_obj.match_criteria),
        status=MatchStatus(db_obj.status),
        soa_amount=_decimal(db_obj.soa_amount),
        invoice_amount=_decimal(db_obj.invoice_amount),
        soa_date=db_obj.soa_date,
        invoice_date=db_obj.invoice_date,
        matched_by=MatchedBy(db_obj.matched_by),
        confirmed_by=db_obj.confirmed_by,
        confirmed_at=db_obj.confirmed_at,
        rejection_reason=db_obj.rejection_reason,
        created_at=db_obj.created_at,
    )


def db_to_discrepancy(db_obj: SOADiscrepancyDB) -> Discrepancy:
    """Convert database model to domain record"""
    return Discrepancy(
        id=db_obj.id,
        case_id=db_obj.case_id,
        soa_item_id=db_obj.soa_item_id,
        match_id=db_obj.match_id,
        invoice_id=db_obj.invoice_id,
        related_soa_item_ids=list(db_obj.related_soa_item_ids or []),
        discrepancy_type=DiscrepancyType(db_obj.discrepancy_type),
        severity=Severity(db_obj.severity),
        description=db_obj.description or "",
        amount_delta=_decimal(db_obj.amount_delta),
        status=DiscrepancyStatus(db_obj.status),
        detected_by=DetectedBy(db_obj.detected_by),
        resolved_by=db_obj.resolved_by,
        resolved_at=db_obj.resolved_at,
        resolution_notes=db_obj.resolution_notes,
        resolution_action=ResolutionAction(db_obj.resolution_action) if db_obj.resolution_action else None,
        created_at=db_obj.created_at,
    )


def db_to_acknowledgement(db_obj: SOAAcknowledgementDB) -> Acknowledgement:
    """Convert database model to domain record, including the summary snapshot"""
    summary = CaseSummary(
        total_lines=db_obj.total_lines,
        total_amount=_decimal(db_obj.total_amount),
        matched_lines=db_obj.matched_lines,
        matched_amount=_decimal(db_obj.matched_amount),
        pending_lines=db_obj.pending_lines,
        pending_amount=_decimal(db_obj.pending_amount),
        unmatched_lines=db_obj.unmatched_lines,
        unmatched_amount=_decimal(db_obj.unmatched_amount),
        discrepancy_lines=db_obj.discrepancy_lines,
        discrepancy_amount=_decimal(db_obj.discrepancy_amount),
        open_discrepancies=db_obj.open_discrepancies,
        net_variance=_decimal(db_obj.net_variance),
    )
    return Acknowledgement(
        id=db_obj.id,
        case_id=db_obj.case_id,
        vendor_id=db_obj.vendor_id,
        acknowledged_by=db_obj.acknowledged_by,
        acknowledged_at=db_obj.acknowledged_at,
        acknowledgement_type=AcknowledgementType(db_obj.acknowledgement_type),
        notes=db_obj.notes,
        summary=summary,
    )


# ==================== REPOSITORY ====================

class SOARepository:
    """Repository for SOA reconciliation database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- transaction control ----------

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()

    async def flush(self):
        await self.session.flush()

    # ---------- cases ----------

    async def add_case(self, vendor_id: str, case_id: Optional[str] = None) -> CaseRecord:
        db_case = SOACaseDB(id=case_id or generate_uuid(), vendor_id=vendor_id, status=CaseStatus.OPEN.value)
        self.session.add(db_case)
        await self.session.flush()
        return db_to_case(db_case)

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        """Get case by ID"""
        result = await self.session.execute(
            select(SOACaseDB).where(SOACaseDB.id == case_id)
        )
        db_case = result.scalar_one_or_none()
        return db_to_case(db_case) if db_case else None

    async def list_cases(self, vendor_id: str) -> List[CaseRecord]:
        """List a vendor's cases, newest first"""
        result = await self.session.execute(
            select(SOACaseDB)
            .where(SOACaseDB.vendor_id == vendor_id)
            .order_by(SOACaseDB.created_at.desc(), SOACaseDB.id)
        )
        return [db_to_case(db_case) for db_case in result.scalars().all()]

    async def set_case_status(self, case_id: str, status: CaseStatus) -> bool:
        values = {"status": status.value}
        if status == CaseStatus.CLOSED:
            values["closed_at"] = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(SOACaseDB).where(SOACaseDB.id == case_id).values(**values)
        )
        return result.rowcount > 0

    # ---------- lines ----------

    async def add_line(self, line: SOALine) -> SOALine:
        db_line = SOALineDB(
            id=line.id or generate_uuid(),
            case_id=line.case_id,
            vendor_id=line.vendor_id,
            line_number=line.line_number,
            invoice_number=line.invoice_number,
            invoice_date=line.invoice_date,
            amount=line.amount,
            currency=line.currency,
            description=line.description,
            reference_number=line.reference_number,
            allow_partial=line.allow_partial,
            status=line.status.value,
        )
        self.session.add(db_line)
        await self.session.flush()
        return db_to_line(db_line)

    async def get_line(self, line_id: str) -> Optional[SOALine]:
        result = await self.session.execute(
            select(SOALineDB).where(SOALineDB.id == line_id)
        )
        db_line = result.scalar_one_or_none()
        return db_to_line(db_line) if db_line else None

    async def list_lines(
        self,
        case_id: str,
        vendor_id: Optional[str] = None,
        status: Optional[LineStatus] = None
    ) -> List[SOALine]:
        """List a case's lines in statement order"""
        conditions = [SOALineDB.case_id == case_id]
        if vendor_id:
            conditions.append(SOALineDB.vendor_id == vendor_id)
        if status:
            conditions.append(SOALineDB.status == status.value)

        result = await self.session.execute(
            select(SOALineDB)
            .where(and_(*conditions))
            .order_by(SOALineDB.line_number, SOALineDB.id)
        )
        return [db_to_line(db_line) for db_line in result.scalars().all()]

    async def set_line_status(self, line_id: str, status: LineStatus) -> bool:
        result = await self.session.execute(
            update(SOALineDB)
            .where(SOALineDB.id == line_id)
            .values(status=status.value, updated_at=datetime.now(timezone.utc))
        )
        return result.rowcount > 0

    # ---------- ledger ----------

    async def add_ledger_record(self, record: LedgerRecord) -> LedgerRecord:
        db_record = LedgerRecordDB(
            id=record.id or generate_uuid(),
            vendor_id=record.vendor_id,
            invoice_number=record.invoice_number,
            invoice_date=record.invoice_date,
            amount=record.amount,
            total_amount=record.total_amount,
            currency=record.currency,
        )
        self.session.add(db_record)
        await self.session.flush()
        return db_to_ledger_record(db_record)

    async def get_ledger_record(self, record_id: str) -> Optional[LedgerRecord]:
        result = await self.session.execute(
            select(LedgerRecordDB).where(LedgerRecordDB.id == record_id)
        )
        db_record = result.scalar_one_or_none()
        return db_to_ledger_record(db_record) if db_record else None

    async def list_ledger_records(self, vendor_id: str, currency: Optional[str] = None) -> List[LedgerRecord]:
        """List a vendor's ledger, optionally for one currency"""
        conditions = [LedgerRecordDB.vendor_id == vendor_id]
        if currency:
            conditions.append(LedgerRecordDB.currency == currency)

        result = await self.session.execute(
            select(LedgerRecordDB)
            .where(and_(*conditions))
            .order_by(LedgerRecordDB.id)
        )
        return [db_to_ledger_record(db_record) for db_record in result.scalars().all()]

    # ---------- matches ----------

    async def add_match(self, match: Match) -> Match:
        """Insert a match. Flushes so the partial unique index is checked here."""
        db_match = SOAMatchDB(
            id=match.id or generate_uuid(),
            case_id=match.case_id,
            soa_item_id=match.soa_item_id,
            invoice_id=match.invoice_id,
            match_type=match.match_type.value,
            is_exact_match=match.is_exact_match,
            confidence=match.confidence,
            match_score=match.match_score,
            match_criteria=match.match_criteria.to_dict(),
            soa_amount=match.soa_amount,
            invoice_amount=match.invoice_amount,
            amount_difference=match.amount_difference,
            soa_date=match.soa_date,
            invoice_date=match.invoice_date,
            status=match.status.value,
            matched_by=match.matched_by.value,
        )
        self.session.add(db_match)
        await self.session.flush()
        return db_to_match(db_match)

    async def get_match(self, match_id: str) -> Optional[Match]:
        result = await self.session.execute(
            select(SOAMatchDB).where(SOAMatchDB.id == match_id)
        )
        db_match = result.scalar_one_or_none()
        return db_to_match(db_match) if db_match else None

    async def get_active_match_for_line(self, soa_item_id: str) -> Optional[Match]:
        result = await self.session.execute(
            select(SOAMatchDB).where(
                and_(
                    SOAMatchDB.soa_item_id == soa_item_id,
                    SOAMatchDB.status != MatchStatus.REJECTED.value
                )
            )
        )
        db_match = result.scalars().first()
        return db_to_match(db_match) if db_match else None

    async def list_matches(self, case_id: str, status: Optional[MatchStatus] = None) -> List[Match]:
        conditions = [SOAMatchDB.case_id == case_id]
        if status:
            conditions.append(SOAMatchDB.status == status.value)

        result = await self.session.execute(
            select(SOAMatchDB)
            .where(and_(*conditions))
            .order_by(SOAMatchDB.created_at, SOAMatchDB.id)
        )
        return [db_to_match(db_match) for db_match in result.scalars().all()]

    async def confirm_pending_match(self, match_id: str, user_id: str) -> bool:
        """Move a pending match to confirmed. False when it was no longer pending."""
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(SOAMatchDB)
            .where(and_(
                SOAMatchDB.id == match_id,
                SOAMatchDB.status == MatchStatus.PENDING.value
            ))
            .values(
                status=MatchStatus.CONFIRMED.value,
                confirmed_by=user_id,
                confirmed_at=now,
                updated_at=now,
            )
        )
        return result.rowcount > 0

    async def reject_pending_match(self, match_id: str, user_id: str, reason: str) -> bool:
        """Move a pending match to rejected. False when it was no longer pending."""
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(SOAMatchDB)
            .where(and_(
                SOAMatchDB.id == match_id,
                SOAMatchDB.status == MatchStatus.PENDING.value
            ))
            .values(
                status=MatchStatus.REJECTED.value,
                rejected_by=user_id,
                rejected_at=now,
                rejection_reason=reason,
                updated_at=now,
            )
        )
        return result.rowcount > 0

    # ---------- discrepancies ----------

    async def add_discrepancy(self, discrepancy: Discrepancy) -> Discrepancy:
        db_discrepancy = SOADiscrepancyDB(
            id=discrepancy.id or generate_uuid(),
            case_id=discrepancy.case_id,
            soa_item_id=discrepancy.soa_item_id,
            match_id=discrepancy.match_id,
            invoice_id=discrepancy.invoice_id,
            related_soa_item_ids=list(discrepancy.related_soa_item_ids),
            discrepancy_type=discrepancy.discrepancy_type.value,
            severity=discrepancy.severity.value,
            description=discrepancy.description,
            amount_delta=discrepancy.amount_delta,
            status=discrepancy.status.value,
            detected_by=discrepancy.detected_by.value,
        )
        self.session.add(db_discrepancy)
        await self.session.flush()
        return db_to_discrepancy(db_discrepancy)

    async def get_discrepancy(self, discrepancy_id: str) -> Optional[Discrepancy]:
        result = await self.session.execute(
            select(SOADiscrepancyDB).where(SOADiscrepancyDB.id == discrepancy_id)
        )
        db_discrepancy = result.scalar_one_or_none()
        return db_to_discrepancy(db_discrepancy) if db_discrepancy else None

    async def list_discrepancies(
        self,
        case_id: str,
        status: Optional[DiscrepancyStatus] = None
    ) -> List[Discrepancy]:
        conditions = [SOADiscrepancyDB.case_id == case_id]
        if status:
            conditions.append(SOADiscrepancyDB.status == status.value)

        result = await self.session.execute(
            select(SOADiscrepancyDB)
            .where(and_(*conditions))
            .order_by(SOADiscrepancyDB.created_at, SOADiscrepancyDB.id)
        )
        return [db_to_discrepancy(d) for d in result.scalars().all()]

    async def refresh_open_discrepancy(self, discrepancy: Discrepancy) -> bool:
        """Rewrite the detector-owned fields of an open discrepancy."""
        result = await self.session.execute(
            update(SOADiscrepancyDB)
            .where(and_(
                SOADiscrepancyDB.id == discrepancy.id,
                SOADiscrepancyDB.status == DiscrepancyStatus.OPEN.value
            ))
            .values(
                severity=discrepancy.severity.value,
                description=discrepancy.description,
                amount_delta=discrepancy.amount_delta,
                match_id=discrepancy.match_id,
                invoice_id=discrepancy.invoice_id,
                related_soa_item_ids=list(discrepancy.related_soa_item_ids),
                updated_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount > 0

    async def resolve_open_discrepancy(
        self,
        discrepancy_id: str,
        user_id: str,
        notes: Optional[str],
        action: ResolutionAction
    ) -> bool:
        """Resolve an open discrepancy. False when it was no longer open."""
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(SOADiscrepancyDB)
            .where(and_(
                SOADiscrepancyDB.id == discrepancy_id,
                SOADiscrepancyDB.status == DiscrepancyStatus.OPEN.value
            ))
            .values(
                status=DiscrepancyStatus.RESOLVED.value,
                resolved_by=user_id,
                resolved_at=now,
                resolution_notes=notes,
                resolution_action=action.value,
                updated_at=now,
            )
        )
        return result.rowcount > 0

    # ---------- acknowledgements ----------

    async def get_acknowledgement(self, case_id: str) -> Optional[Acknowledgement]:
        result = await self.session.execute(
            select(SOAAcknowledgementDB).where(SOAAcknowledgementDB.case_id == case_id)
        )
        db_ack = result.scalar_one_or_none()
        return db_to_acknowledgement(db_ack) if db_ack else None

    async def add_acknowledgement(self, ack: Acknowledgement) -> Acknowledgement:
        summary = ack.summary
        db_ack = SOAAcknowledgementDB(
            id=ack.id or generate_uuid(),
            case_id=ack.case_id,
            vendor_id=ack.vendor_id,
            acknowledged_by=ack.acknowledged_by,
            acknowledged_at=ack.acknowledged_at or datetime.now(timezone.utc),
            acknowledgement_type=ack.acknowledgement_type.value,
            notes=ack.notes,
            total_lines=summary.total_lines,
            matched_lines=summary.matched_lines,
            pending_lines=summary.pending_lines,
            discrepancy_lines=summary.discrepancy_lines,
            unmatched_lines=summary.unmatched_lines,
            open_discrepancies=summary.open_discrepancies,
            total_amount=summary.total_amount,
            matched_amount=summary.matched_amount,
            pending_amount=summary.pending_amount,
            discrepancy_amount=summary.discrepancy_amount,
            unmatched_amount=summary.unmatched_amount,
            net_variance=summary.net_variance,
        )
        self.session.add(db_ack)
        await self.session.flush()
        return db_to_acknowledgement(db_ack)
