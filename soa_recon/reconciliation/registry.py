"""
SOA Reconciliation Registry

Closed vocabularies and tunable thresholds for the SOA engine.

Every status / type / severity that crosses the engine boundary is a
``str`` enum. Raw strings coming from callers are parsed with
``parse_enum`` which raises ``ValidationError`` for unknown values.

Thresholds live in two dataclasses:
- MatchingConfig: deterministic epsilon, fuzzy weights and cut-offs
- DetectionConfig: discrepancy tolerances and severity ratio
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar
from dataclasses import dataclass, asdict

from soa_recon.reconciliation.errors import ValidationError


E = TypeVar("E", bound=Enum)


class LineStatus(str, Enum):
    """Status of a statement line."""
    EXTRACTED = "extracted"     # Unmatched, available to the matcher
    MATCHED = "matched"         # Has a pending or confirmed match
    DISPUTED = "disputed"       # Flagged at ingest, never auto-matched


class MatchType(str, Enum):
    DETERMINISTIC = "deterministic"
    FUZZY = "fuzzy"


class MatchStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class MatchedBy(str, Enum):
    SYSTEM = "system"
    MANUAL = "manual"


class DiscrepancyType(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_INVOICE = "missing_invoice"
    DUPLICATE_CLAIM = "duplicate_claim"
    CURRENCY_MISMATCH = "currency_mismatch"
    DATE_MISMATCH = "date_mismatch"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DiscrepancyStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ResolutionAction(str, Enum):
    CORRECTED = "corrected"
    WAIVED = "waived"
    ESCALATED = "escalated"
    IGNORED = "ignored"


class DetectedBy(str, Enum):
    SYSTEM = "system"
    MANUAL = "manual"


class AcknowledgementType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    WITH_EXCEPTIONS = "with_exceptions"


class CaseStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


def parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    """
    Parse a raw value into a member of ``enum_cls``.

    Raises:
        ValidationError: if the value is not a member
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        valid = [m.value for m in enum_cls]
        raise ValidationError(f"Invalid {field} {value!r}. Valid values: {valid}")


def parse_optional_enum(enum_cls: Type[E], value: Any, field: str) -> Optional[E]:
    if value is None or value == "":
        return None
    return parse_enum(enum_cls, value, field)


@dataclass
class MatchingConfig:
    """
    Thresholds for the SOA matcher.

    Weights are normalised by their sum when scoring, so they do not
    have to add up to exactly 1.0.
    """
    amount_epsilon: Decimal = Decimal("0.01")
    min_confidence: float = 0.60
    date_window_days: int = 30
    amount_tolerance_percent: Decimal = Decimal("0.10")
    amount_tolerance_absolute: Decimal = Decimal("1.00")
    weight_amount: float = 0.45
    weight_date: float = 0.20
    weight_invoice_number: float = 0.35
    max_candidates: int = 500
    auto_confirm_deterministic: bool = False
    allow_partial: bool = False

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        return cls(
            amount_epsilon=Decimal(str(settings.MATCH_AMOUNT_EPSILON)),
            min_confidence=settings.FUZZY_MIN_CONFIDENCE,
            date_window_days=settings.FUZZY_DATE_WINDOW_DAYS,
            amount_tolerance_percent=Decimal(str(settings.FUZZY_AMOUNT_TOLERANCE_PERCENT)),
            amount_tolerance_absolute=Decimal(str(settings.FUZZY_AMOUNT_TOLERANCE_ABSOLUTE)),
            weight_amount=settings.WEIGHT_AMOUNT,
            weight_date=settings.WEIGHT_DATE,
            weight_invoice_number=settings.WEIGHT_INVOICE_NUMBER,
            max_candidates=settings.MAX_CANDIDATES,
            auto_confirm_deterministic=settings.AUTO_CONFIRM_DETERMINISTIC,
            allow_partial=settings.ALLOW_PARTIAL_MATCHES,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data


@dataclass
class DetectionConfig:
    """Thresholds for the discrepancy detector."""
    amount_tolerance: Decimal = Decimal("0.01")
    high_severity_ratio: Decimal = Decimal("0.10")
    missing_invoice_window_days: int = 30

    @classmethod
    def from_settings(cls, settings) -> "DetectionConfig":
        return cls(
            amount_tolerance=Decimal(str(settings.DISCREPANCY_AMOUNT_TOLERANCE)),
            high_severity_ratio=Decimal(str(settings.HIGH_SEVERITY_RATIO)),
            missing_invoice_window_days=settings.MISSING_INVOICE_WINDOW_DAYS,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_tolerance": str(self.amount_tolerance),
            "high_severity_ratio": str(self.high_severity_ratio),
            "missing_invoice_window_days": self.missing_invoice_window_days,
        }
