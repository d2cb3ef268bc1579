"""
SOA Reconciliation Domain Models

Plain dataclasses passed between the repository, matcher, detector,
state machine and sign-off coordinator. Persistence rows are converted
to these by the repository; nothing here touches the database.

Amounts are always Decimal. Serialisation (to_dict) renders amounts as
strings and dates as ISO strings.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field

from soa_recon.reconciliation.errors import ValidationError
from soa_recon.reconciliation.registry import (
    LineStatus,
    MatchType,
    MatchStatus,
    MatchedBy,
    DiscrepancyType,
    DiscrepancyStatus,
    Severity,
    ResolutionAction,
    DetectedBy,
    AcknowledgementType,
    CaseStatus,
)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[Union[date, datetime]]) -> Optional[str]:
    return value.isoformat() if value else None


# ==================== LINE REPOSITORY RECORDS ====================

@dataclass
class CaseRecord:
    """A reconciliation case as seen through the case store."""
    id: str
    vendor_id: str
    status: CaseStatus = CaseStatus.OPEN
    created_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status == CaseStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }


@dataclass
class SOALine:
    """One claimed open item from a vendor statement."""
    id: str
    case_id: str
    vendor_id: str
    amount: Decimal
    currency: str
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    status: LineStatus = LineStatus.EXTRACTED
    line_number: Optional[int] = None
    description: Optional[str] = None
    reference_number: Optional[str] = None
    allow_partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "vendor_id": self.vendor_id,
            "line_number": self.line_number,
            "invoice_number": self.invoice_number,
            "invoice_date": _iso(self.invoice_date),
            "amount": _money(self.amount),
            "currency": self.currency,
            "description": self.description,
            "reference_number": self.reference_number,
            "allow_partial": self.allow_partial,
            "status": self.status.value,
        }


@dataclass
class LedgerRecord:
    """One internal invoice or payment entry. Read-only for the engine."""
    id: str
    vendor_id: str
    amount: Decimal
    currency: str
    total_amount: Decimal
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "invoice_number": self.invoice_number,
            "invoice_date": _iso(self.invoice_date),
            "amount": _money(self.amount),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
        }


# ==================== MATCHES ====================

@dataclass
class MatchCriteria:
    """
    Which signals fired for a match.

    The named fields are authoritative and drive scoring; ``extra`` only
    carries annotations (ambiguity notes, pass labels) for reviewers.
    """
    invoice_number: bool = False
    amount: bool = False
    currency: bool = False
    date: bool = False
    amount_score: float = 0.0
    date_score: float = 0.0
    invoice_number_score: float = 0.0
    date_difference_days: Optional[int] = None
    amount_difference: Optional[Decimal] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_number": self.invoice_number,
            "amount": self.amount,
            "currency": self.currency,
            "date": self.date,
            "amount_score": self.amount_score,
            "date_score": self.date_score,
            "invoice_number_score": self.invoice_number_score,
            "date_difference_days": self.date_difference_days,
            "amount_difference": _money(self.amount_difference),
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatchCriteria":
        """
        Build criteria from a JSON-style dict.

        Raises:
            ValidationError: a score, day count or amount is not numeric
        """
        data = data or {}
        amount_difference = data.get("amount_difference")
        days = data.get("date_difference_days")
        try:
            return cls(
                invoice_number=bool(data.get("invoice_number", False)),
                amount=bool(data.get("amount", False)),
                currency=bool(data.get("currency", False)),
                date=bool(data.get("date", False)),
                amount_score=float(data.get("amount_score", 0.0)),
                date_score=float(data.get("date_score", 0.0)),
                invoice_number_score=float(data.get("invoice_number_score", 0.0)),
                date_difference_days=int(days) if days is not None else None,
                amount_difference=Decimal(str(amount_difference)) if amount_difference is not None else None,
                extra=dict(data.get("extra") or {}),
            )
        except (TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Invalid match criteria: {e}")


@dataclass
class Match:
    """A proposed or decided association between one SOA line and one ledger record."""
    soa_item_id: str
    invoice_id: str
    match_type: MatchType
    is_exact_match: bool
    confidence: float
    match_score: int
    match_criteria: MatchCriteria = field(default_factory=MatchCriteria)
    id: Optional[str] = None
    case_id: Optional[str] = None
    status: MatchStatus = MatchStatus.PENDING
    soa_amount: Optional[Decimal] = None
    invoice_amount: Optional[Decimal] = None
    soa_date: Optional[date] = None
    invoice_date: Optional[date] = None
    matched_by: MatchedBy = MatchedBy.SYSTEM
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Non-rejected matches occupy their SOA line."""
        return self.status != MatchStatus.REJECTED

    @property
    def amount_difference(self) -> Optional[Decimal]:
        """SOA amount minus invoice amount."""
        if self.soa_amount is None or self.invoice_amount is None:
            return None
        return self.soa_amount - self.invoice_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "soa_item_id": self.soa_item_id,
            "invoice_id": self.invoice_id,
            "match_type": self.match_type.value,
            "is_exact_match": self.is_exact_match,
            "confidence": self.confidence,
            "match_score": self.match_score,
            "match_criteria": self.match_criteria.to_dict(),
            "status": self.status.value,
            "soa_amount": _money(self.soa_amount),
            "invoice_amount": _money(self.invoice_amount),
            "amount_difference": _money(self.amount_difference),
            "soa_date": _iso(self.soa_date),
            "invoice_date": _iso(self.invoice_date),
            "matched_by": self.matched_by.value,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": _iso(self.confirmed_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
        }


# ==================== DISCREPANCIES ====================

@dataclass
class Discrepancy:
    """A flagged inconsistency tied to a case, optionally to one SOA line."""
    case_id: str
    discrepancy_type: DiscrepancyType
    severity: Severity
    description: str
    amount_delta: Optional[Decimal] = None
    soa_item_id: Optional[str] = None
    id: Optional[str] = None
    match_id: Optional[str] = None
    invoice_id: Optional[str] = None
    related_soa_item_ids: List[str] = field(default_factory=list)
    status: DiscrepancyStatus = DiscrepancyStatus.OPEN
    detected_by: DetectedBy = DetectedBy.SYSTEM
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolution_action: Optional[ResolutionAction] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == DiscrepancyStatus.OPEN

    @property
    def line_ids(self) -> List[str]:
        """Every SOA line this discrepancy refers to."""
        ids = [self.soa_item_id] if self.soa_item_id else []
        ids.extend(i for i in self.related_soa_item_ids if i not in ids)
        return ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "soa_item_id": self.soa_item_id,
            "match_id": self.match_id,
            "invoice_id": self.invoice_id,
            "related_soa_item_ids": list(self.related_soa_item_ids),
            "discrepancy_type": self.discrepancy_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "amount_delta": _money(self.amount_delta),
            "status": self.status.value,
            "detected_by": self.detected_by.value,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "resolution_action": self.resolution_action.value if self.resolution_action else None,
            "created_at": _iso(self.created_at),
        }


# ==================== SUMMARY & SIGN-OFF ====================

@dataclass(frozen=True)
class CaseSummary:
    """Case-level totals derived from lines, matches and discrepancies."""
    total_lines: int
    total_amount: Decimal
    matched_lines: int
    matched_amount: Decimal
    pending_lines: int
    pending_amount: Decimal
    unmatched_lines: int
    unmatched_amount: Decimal
    discrepancy_lines: int
    discrepancy_amount: Decimal
    open_discrepancies: int
    net_variance: Decimal

    @property
    def has_open_items(self) -> bool:
        return bool(self.discrepancy_lines or self.open_discrepancies or self.pending_lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "total_amount": _money(self.total_amount),
            "matched_lines": self.matched_lines,
            "matched_amount": _money(self.matched_amount),
            "pending_lines": self.pending_lines,
            "pending_amount": _money(self.pending_amount),
            "unmatched_lines": self.unmatched_lines,
            "unmatched_amount": _money(self.unmatched_amount),
            "discrepancy_lines": self.discrepancy_lines,
            "discrepancy_amount": _money(self.discrepancy_amount),
            "open_discrepancies": self.open_discrepancies,
            "net_variance": _money(self.net_variance),
        }


@dataclass
class Acknowledgement:
    """The sign-off record that closes a case."""
    case_id: str
    vendor_id: str
    acknowledged_by: str
    acknowledgement_type: AcknowledgementType
    notes: Optional[str] = None
    id: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    summary: Optional[CaseSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "vendor_id": self.vendor_id,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledgement_type": self.acknowledgement_type.value,
            "notes": self.notes,
            "summary": self.summary.to_dict() if self.summary else None,
        }


@dataclass
class StatementSummary:
    """One row of ListStatements: a case with its current totals."""
    case: CaseRecord
    summary: CaseSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case.id,
            "vendor_id": self.case.vendor_id,
            "status": self.case.status.value,
            "created_at": _iso(self.case.created_at),
            "summary": self.summary.to_dict(),
        }


# ==================== OPERATION INPUTS ====================
# Enum-typed fields accept raw strings; the state machine parses them
# with parse_enum and rejects unknown values.

@dataclass
class MatchData:
    match_type: Union[MatchType, str] = MatchType.FUZZY
    is_exact_match: bool = False
    confidence: float = 0.0
    match_score: int = 0
    match_criteria: Optional[MatchCriteria] = None
    matched_by: Union[MatchedBy, str] = MatchedBy.SYSTEM

    @classmethod
    def from_match(cls, match: Match, matched_by: Union[MatchedBy, str] = MatchedBy.SYSTEM) -> "MatchData":
        return cls(
            match_type=match.match_type,
            is_exact_match=match.is_exact_match,
            confidence=match.confidence,
            match_score=match.match_score,
            match_criteria=match.match_criteria,
            matched_by=matched_by,
        )


@dataclass
class DiscrepancyData:
    discrepancy_type: Union[DiscrepancyType, str]
    severity: Union[Severity, str] = Severity.MEDIUM
    description: str = ""
    amount_delta: Optional[Decimal] = None
    soa_item_id: Optional[str] = None
    match_id: Optional[str] = None
    invoice_id: Optional[str] = None
    related_soa_item_ids: List[str] = field(default_factory=list)
    detected_by: Union[DetectedBy, str] = DetectedBy.MANUAL


@dataclass
class ResolutionData:
    notes: Optional[str] = None
    action: Union[ResolutionAction, str] = ResolutionAction.CORRECTED


@dataclass
class AcknowledgementData:
    acknowledgement_type: Union[AcknowledgementType, str] = AcknowledgementType.FULL
    notes: Optional[str] = None
