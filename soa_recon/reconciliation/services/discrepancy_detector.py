"""
Discrepancy Detector

Inspects a case's lines, matches and the vendor ledger and plans which
discrepancies to raise. The detector never writes; the reconciliation
service applies the returned plan inside its own transaction.

Checks:
- amount_mismatch: confirmed match whose |soa - invoice| exceeds tolerance
- missing_invoice: extracted line with no active match and no vendor ledger
  record inside the date window
- duplicate_claim: two or more lines with active matches to one ledger record

Idempotent on (soa_item_id, discrepancy_type): an open discrepancy is
updated when its delta or description moved, otherwise skipped. A
resolved one with the same delta is not raised again.
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from soa_recon.reconciliation.models import Discrepancy, LedgerRecord, Match, SOALine
from soa_recon.reconciliation.registry import (
    DetectedBy,
    DetectionConfig,
    DiscrepancyType,
    LineStatus,
    MatchStatus,
    Severity,
)
from soa_recon.reconciliation.services.summary import active_matches_by_line

logger = logging.getLogger(__name__)

DiscrepancyKey = Tuple[Optional[str], DiscrepancyType]


@dataclass
class DetectionPlan:
    """Discrepancies to insert and open discrepancies to refresh."""
    to_create: List[Discrepancy] = field(default_factory=list)
    to_update: List[Discrepancy] = field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.to_update

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": len(self.to_create),
            "updated": len(self.to_update),
            "skipped": self.skipped,
        }


class DiscrepancyDetector:
    """Plans discrepancy records for one case."""

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()

    def detect(
        self,
        case_id: str,
        lines: Iterable[SOALine],
        matches: Iterable[Match],
        ledger_records: Iterable[LedgerRecord],
        existing: Iterable[Discrepancy] = (),
    ) -> DetectionPlan:
        """
        Plan discrepancies for a case.

        Args:
            case_id: The case being inspected
            lines: Every SOA line of the case
            matches: Every match of the case, any status
            ledger_records: The vendor's ledger
            existing: Discrepancies already stored for the case

        Returns:
            DetectionPlan with records to create and open records to update
        """
        lines = sorted(lines, key=lambda l: l.id)
        matches = list(matches)
        ledger = {record.id: record for record in ledger_records}

        findings = []
        findings.extend(self._amount_mismatches(case_id, lines, matches))
        findings.extend(self._missing_invoices(case_id, lines, matches, list(ledger.values())))
        findings.extend(self._duplicate_claims(case_id, lines, matches, ledger))

        return self._reconcile(findings, existing)

    # ==================== CHECKS ====================

    def _amount_mismatches(self, case_id: str, lines: List[SOALine], matches: List[Match]) -> List[Discrepancy]:
        by_id = {line.id: line for line in lines}
        found = []
        for match in sorted(matches, key=lambda m: m.soa_item_id):
            line = by_id.get(match.soa_item_id)
            if line is None or match.status != MatchStatus.CONFIRMED:
                continue
            soa_amount = match.soa_amount if match.soa_amount is not None else line.amount
            invoice_amount = match.invoice_amount
            if invoice_amount is None:
                continue

            delta = soa_amount - invoice_amount
            if abs(delta) <= self.config.amount_tolerance:
                continue

            if abs(delta) > self.config.high_severity_ratio * abs(soa_amount):
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM

            found.append(Discrepancy(
                case_id=case_id,
                soa_item_id=line.id,
                match_id=match.id,
                invoice_id=match.invoice_id,
                discrepancy_type=DiscrepancyType.AMOUNT_MISMATCH,
                severity=severity,
                description=(
                    f"Statement amount {soa_amount} differs from ledger amount "
                    f"{invoice_amount} by {delta}"
                ),
                amount_delta=delta,
                detected_by=DetectedBy.SYSTEM,
            ))
        return found

    def _missing_invoices(
        self,
        case_id: str,
        lines: List[SOALine],
        matches: List[Match],
        ledger: List[LedgerRecord],
    ) -> List[Discrepancy]:
        active = active_matches_by_line(matches)
        window = self.config.missing_invoice_window_days
        found = []
        for line in lines:
            if line.status != LineStatus.EXTRACTED or line.id in active:
                continue

            vendor_records = [r for r in ledger if r.vendor_id == line.vendor_id]
            if line.invoice_date is not None:
                nearby = [
                    r for r in vendor_records
                    if r.invoice_date is not None
                    and abs((line.invoice_date - r.invoice_date).days) <= window
                ]
                description = (
                    f"No ledger record for vendor {line.vendor_id} within {window} days "
                    f"of {line.invoice_date.isoformat()}"
                )
            else:
                nearby = vendor_records
                description = f"No ledger record for vendor {line.vendor_id}"

            if nearby:
                continue

            found.append(Discrepancy(
                case_id=case_id,
                soa_item_id=line.id,
                discrepancy_type=DiscrepancyType.MISSING_INVOICE,
                severity=Severity.HIGH,
                description=description,
                amount_delta=line.amount,
                detected_by=DetectedBy.SYSTEM,
            ))
        return found

    def _duplicate_claims(
        self,
        case_id: str,
        lines: List[SOALine],
        matches: List[Match],
        ledger: Dict[str, LedgerRecord],
    ) -> List[Discrepancy]:
        by_id = {line.id: line for line in lines}
        claims: Dict[str, Dict[str, Match]] = {}
        for match in matches:
            if not match.is_active or match.soa_item_id not in by_id:
                continue
            claims.setdefault(match.invoice_id, {})[match.soa_item_id] = match

        found = []
        for invoice_id in sorted(claims):
            claimants = claims[invoice_id]
            if len(claimants) < 2:
                continue

            line_ids = sorted(claimants)
            claimed = sum((by_id[i].amount for i in line_ids), Decimal("0"))
            record = ledger.get(invoice_id)
            if record is not None:
                invoice_total = record.total_amount
            else:
                invoice_total = claimants[line_ids[0]].invoice_amount or Decimal("0")

            logger.info(
                f"Duplicate claim on ledger record {invoice_id} by lines {line_ids}",
                extra={"case_id": case_id, "invoice_id": invoice_id},
            )
            found.append(Discrepancy(
                case_id=case_id,
                soa_item_id=line_ids[0],
                invoice_id=invoice_id,
                related_soa_item_ids=line_ids,
                discrepancy_type=DiscrepancyType.DUPLICATE_CLAIM,
                severity=Severity.MEDIUM,
                description=f"{len(line_ids)} statement lines claim ledger record {invoice_id}",
                amount_delta=claimed - invoice_total,
                detected_by=DetectedBy.SYSTEM,
            ))
        return found

    # ==================== IDEMPOTENCE ====================

    def _reconcile(self, findings: List[Discrepancy], existing: Iterable[Discrepancy]) -> DetectionPlan:
        open_by_key: Dict[DiscrepancyKey, Discrepancy] = {}
        resolved_by_key: Dict[DiscrepancyKey, List[Discrepancy]] = {}
        for discrepancy in existing:
            key = (discrepancy.soa_item_id, discrepancy.discrepancy_type)
            if discrepancy.is_open:
                open_by_key.setdefault(key, discrepancy)
            else:
                resolved_by_key.setdefault(key, []).append(discrepancy)

        plan = DetectionPlan()
        seen = set()
        for finding in findings:
            key = (finding.soa_item_id, finding.discrepancy_type)
            if key in seen:
                continue
            seen.add(key)

            current = open_by_key.get(key)
            if current is not None:
                if self._changed(current, finding):
                    plan.to_update.append(replace(
                        current,
                        amount_delta=finding.amount_delta,
                        description=finding.description,
                        severity=finding.severity,
                        match_id=finding.match_id or current.match_id,
                        invoice_id=finding.invoice_id or current.invoice_id,
                        related_soa_item_ids=list(finding.related_soa_item_ids),
                    ))
                else:
                    plan.skipped += 1
                continue

            if any(r.amount_delta == finding.amount_delta for r in resolved_by_key.get(key, [])):
                plan.skipped += 1
                continue

            plan.to_create.append(finding)
        return plan

    @staticmethod
    def _changed(current: Discrepancy, finding: Discrepancy) -> bool:
        return (
            current.amount_delta != finding.amount_delta
            or current.description != finding.description
            or sorted(current.related_soa_item_ids) != sorted(finding.related_soa_item_ids)
        )
