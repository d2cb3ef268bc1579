"""
SOA Matching Rules

Proposes at most one ledger record for a statement line.

Deterministic pass (tried first):
- invoice_number equal after trim + case-fold
- currency equal
- abs(line.amount - record.total_amount) < epsilon

Exactly one qualifier gives a deterministic, exact match (score 100).
Several qualifiers are ambiguous: nothing is picked and the line falls
through to the fuzzy pass.

Fuzzy pass (same-currency candidates only):
- amount proximity, linear decay to zero at the tolerance band
- date proximity, linear decay to zero at the date window
- invoice number similarity (SequenceMatcher ratio)

Weighted score 0-100, confidence = score / 100. The best candidate at
or above the minimum confidence is proposed. Ties go to the closer
invoice date, then the lowest ledger id.

Partial pass (opt-in, per line or by config):
- same normalised invoice number and currency
- 0 < line.amount < record.total_amount
Proposed at a fixed confidence of 0.75 with the remaining balance in
the criteria. Only tried when the fuzzy pass proposes nothing.

Proposing has no side effects.
"""

import re
import logging
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Tuple

from soa_recon.reconciliation.errors import InvalidStateError, NoCandidateError
from soa_recon.reconciliation.models import LedgerRecord, Match, MatchCriteria, SOALine
from soa_recon.reconciliation.registry import (
    LineStatus,
    MatchingConfig,
    MatchStatus,
    MatchType,
)

logger = logging.getLogger(__name__)

_DOC_NUMBER_NOISE = re.compile(r"[\s\-_.,/]")
PARTIAL_MATCH_SCORE = 75


def normalize_doc_number(value: Optional[str]) -> str:
    """Uppercase a document number and strip separators (spaces, -_.,/)."""
    if not value:
        return ""
    return _DOC_NUMBER_NOISE.sub("", value).upper()


def _invoice_key(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


class SOAMatchingRules:
    """
    Matching rules engine for vendor statement lines.

    Stateless apart from its configuration, so one instance can be shared
    across requests and tasks.
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()
        total_weight = (
            self.config.weight_amount
            + self.config.weight_date
            + self.config.weight_invoice_number
        )
        if total_weight <= 0:
            raise ValueError("Matching weights must sum to a positive value")
        self._total_weight = total_weight

    # ==================== PUBLIC API ====================

    def propose(
        self,
        line: SOALine,
        candidates: Iterable[LedgerRecord],
        allow_partial: Optional[bool] = None,
    ) -> Optional[Match]:
        """
        Propose a match for one extracted line.

        Args:
            line: The statement line to match
            candidates: Ledger records; other vendors' records are ignored
            allow_partial: Force the partial pass on or off; None defers to
                the line's own flag and then the config

        Returns:
            A pending Match, or None when nothing clears the threshold

        Raises:
            InvalidStateError: line is not extracted
            NoCandidateError: no candidate belongs to the line's vendor
        """
        if line.status != LineStatus.EXTRACTED:
            raise InvalidStateError(
                f"SOA line {line.id} is {line.status.value}; only extracted lines can be matched"
            )

        pool = [c for c in candidates if c.vendor_id == line.vendor_id]
        if not pool:
            raise NoCandidateError(f"No ledger candidates for vendor {line.vendor_id}")

        qualifiers = self._deterministic_candidates(line, pool)
        if len(qualifiers) == 1:
            return self._build_match(line, qualifiers[0], deterministic=True)

        ambiguous_ids = sorted(q.id for q in qualifiers)
        if ambiguous_ids:
            logger.info(
                f"Ambiguous deterministic match for SOA line {line.id}: {ambiguous_ids}",
                extra={"soa_item_id": line.id, "ambiguous_candidates": ambiguous_ids},
            )

        ranked = self.rank(line, pool)
        if ranked:
            best, criteria, score = ranked[0]
            if score / 100 >= self.config.min_confidence:
                if ambiguous_ids:
                    criteria.extra["ambiguous_candidates"] = ambiguous_ids
                return self._build_match(line, best, deterministic=False, criteria=criteria, score=score)
            logger.debug(
                f"Best candidate {best.id} for SOA line {line.id} scored {score}, below threshold"
            )

        if self._partial_enabled(line, allow_partial):
            return self._propose_partial(line, pool)
        return None

    def evaluate(self, line: SOALine, record: LedgerRecord) -> Match:
        """
        Score one explicit line/record pair, with no threshold applied.

        Used for manual matching where the reviewer has already chosen
        the ledger record. A pair that meets every deterministic condition
        comes back as a deterministic match.
        """
        if self._is_deterministic(line, record):
            return self._build_match(line, record, deterministic=True)
        criteria, score = self._score_match(line, record)
        return self._build_match(line, record, deterministic=False, criteria=criteria, score=score)

    def rank(self, line: SOALine, candidates: List[LedgerRecord]) -> List[Tuple[LedgerRecord, MatchCriteria, int]]:
        """
        Score the pre-filtered candidates and order them best first.

        Ordering: higher score, then closer invoice date, then lowest id.
        """
        scored = []
        for record in self._prefilter(line, candidates):
            criteria, score = self._score_match(line, record)
            scored.append((record, criteria, score))

        def sort_key(item):
            record, criteria, score = item
            days = criteria.date_difference_days
            return (-score, days if days is not None else float("inf"), record.id)

        scored.sort(key=sort_key)
        return scored

    # ==================== DETERMINISTIC PASS ====================

    def _is_deterministic(self, line: SOALine, record: LedgerRecord) -> bool:
        line_key = _invoice_key(line.invoice_number)
        return (
            bool(line_key)
            and line_key == _invoice_key(record.invoice_number)
            and line.currency == record.currency
            and abs(line.amount - record.total_amount) < self.config.amount_epsilon
        )

    def _deterministic_candidates(self, line: SOALine, pool: List[LedgerRecord]) -> List[LedgerRecord]:
        return [record for record in pool if self._is_deterministic(line, record)]

    # ==================== FUZZY PASS ====================

    def _prefilter(self, line: SOALine, candidates: List[LedgerRecord]) -> List[LedgerRecord]:
        """Same currency only, closest amounts first, capped at max_candidates."""
        same_currency = [c for c in candidates if c.currency == line.currency]
        same_currency.sort(key=lambda c: (abs(line.amount - c.total_amount), c.id))
        return same_currency[: self.config.max_candidates]

    def _score_match(self, line: SOALine, record: LedgerRecord) -> Tuple[MatchCriteria, int]:
        """
        Score one pair.

        Returns:
            Tuple of (criteria, match_score 0-100)
        """
        amount_score, amount_difference = self._score_amount(line, record)
        date_score, date_difference_days = self._score_date(line, record)
        invoice_number_score = self._score_invoice_number(line, record)

        total = (
            amount_score * self.config.weight_amount
            + date_score * self.config.weight_date
            + invoice_number_score * self.config.weight_invoice_number
        ) / self._total_weight
        match_score = max(0, min(100, int(round(total * 100))))

        criteria = MatchCriteria(
            invoice_number=bool(_invoice_key(line.invoice_number))
            and _invoice_key(line.invoice_number) == _invoice_key(record.invoice_number),
            amount=abs(amount_difference) < self.config.amount_epsilon,
            currency=line.currency == record.currency,
            date=date_difference_days is not None
            and date_difference_days <= self.config.date_window_days,
            amount_score=round(amount_score, 4),
            date_score=round(date_score, 4),
            invoice_number_score=round(invoice_number_score, 4),
            date_difference_days=date_difference_days,
            amount_difference=amount_difference,
        )
        return criteria, match_score

    def _score_amount(self, line: SOALine, record: LedgerRecord) -> Tuple[float, Decimal]:
        """Score amount proximity; returns (score, line.amount - total_amount)."""
        difference = line.amount - record.total_amount
        band = max(
            self.config.amount_tolerance_absolute,
            self.config.amount_tolerance_percent * abs(line.amount),
        )
        distance = abs(difference)
        if band <= 0:
            return (1.0 if distance == 0 else 0.0), difference
        if distance >= band:
            return 0.0, difference
        return float(1 - distance / band), difference

    def _score_date(self, line: SOALine, record: LedgerRecord) -> Tuple[float, Optional[int]]:
        """Score date proximity; returns (score, absolute day difference)."""
        if not line.invoice_date or not record.invoice_date:
            return 0.5, None  # Neutral score if date missing

        days = abs((line.invoice_date - record.invoice_date).days)
        window = self.config.date_window_days
        if window <= 0:
            return (1.0 if days == 0 else 0.0), days
        if days >= window:
            return 0.0, days
        return 1 - days / window, days

    def _score_invoice_number(self, line: SOALine, record: LedgerRecord) -> float:
        """Score invoice number similarity using fuzzy matching."""
        source_number = normalize_doc_number(line.invoice_number)
        target_number = normalize_doc_number(record.invoice_number)

        if not source_number or not target_number:
            return 0.5  # Neutral score

        return SequenceMatcher(None, source_number, target_number).ratio()

    # ==================== PARTIAL PASS ====================

    def _partial_enabled(self, line: SOALine, allow_partial: Optional[bool]) -> bool:
        if allow_partial is not None:
            return allow_partial
        return line.allow_partial or self.config.allow_partial

    def _propose_partial(self, line: SOALine, pool: List[LedgerRecord]) -> Optional[Match]:
        """
        Offer a ledger record the line settles only part of.

        Picks the qualifier with the smallest remaining balance, then the
        lowest ledger id.
        """
        line_number = normalize_doc_number(line.invoice_number)
        if not line_number or line.amount <= 0:
            return None

        qualifiers = [
            record for record in pool
            if record.currency == line.currency
            and normalize_doc_number(record.invoice_number) == line_number
            and line.amount < record.total_amount
        ]
        if not qualifiers:
            return None

        record = min(qualifiers, key=lambda r: (r.total_amount - line.amount, r.id))
        remaining = record.total_amount - line.amount
        date_score, date_difference_days = self._score_date(line, record)
        criteria = MatchCriteria(
            invoice_number=True,
            amount=False,
            currency=True,
            date=date_difference_days is not None
            and date_difference_days <= self.config.date_window_days,
            amount_score=0.0,
            date_score=round(date_score, 4),
            invoice_number_score=1.0,
            date_difference_days=date_difference_days,
            amount_difference=line.amount - record.total_amount,
            extra={"partial": True, "remaining_amount": str(remaining)},
        )
        logger.info(
            f"Partial settlement proposed for SOA line {line.id} against {record.id}, remaining {remaining}"
        )
        return self._build_match(
            line, record, deterministic=False, criteria=criteria, score=PARTIAL_MATCH_SCORE
        )

    # ==================== BUILDERS ====================

    def _build_match(
        self,
        line: SOALine,
        record: LedgerRecord,
        deterministic: bool,
        criteria: Optional[MatchCriteria] = None,
        score: int = 100,
    ) -> Match:
        if deterministic:
            date_difference_days = None
            if line.invoice_date and record.invoice_date:
                date_difference_days = abs((line.invoice_date - record.invoice_date).days)
            criteria = MatchCriteria(
                invoice_number=True,
                amount=True,
                currency=True,
                date=date_difference_days is not None
                and date_difference_days <= self.config.date_window_days,
                amount_score=1.0,
                date_score=1.0,
                invoice_number_score=1.0,
                date_difference_days=date_difference_days,
                amount_difference=line.amount - record.total_amount,
            )
            score = 100

        return Match(
            soa_item_id=line.id,
            invoice_id=record.id,
            case_id=line.case_id,
            match_type=MatchType.DETERMINISTIC if deterministic else MatchType.FUZZY,
            is_exact_match=deterministic,
            confidence=score / 100,
            match_score=score,
            match_criteria=criteria or MatchCriteria(),
            status=MatchStatus.PENDING,
            soa_amount=line.amount,
            invoice_amount=record.total_amount,
            soa_date=line.invoice_date,
            invoice_date=record.invoice_date,
        )
