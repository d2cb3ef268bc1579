"""
SOA Reconciliation Service

Core business logic for statement-of-account reconciliation:
- Batch matching of a case's statement lines against the vendor ledger
- Creating, confirming and rejecting matches
- Creating and resolving discrepancies
- Re-running discrepancy detection after every batch / confirm / reject
- Read-side listings and case summaries

This service is the only writer of matches and discrepancies. Each
mutating operation commits or rolls back as a unit.
"""

import asyncio
import uuid
import logging
import weakref
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from soa_recon.reconciliation.errors import (
    ConflictError,
    InvalidStateError,
    NoCandidateError,
    NotFoundError,
    ValidationError,
)
from soa_recon.reconciliation.matching_rules.soa_rules import SOAMatchingRules
from soa_recon.reconciliation.models import (
    CaseRecord,
    CaseSummary,
    Discrepancy,
    DiscrepancyData,
    LedgerRecord,
    Match,
    MatchCriteria,
    MatchData,
    ResolutionData,
    SOALine,
    StatementSummary,
)
from soa_recon.reconciliation.registry import (
    DetectedBy,
    DiscrepancyStatus,
    DiscrepancyType,
    LineStatus,
    MatchedBy,
    MatchStatus,
    MatchType,
    ResolutionAction,
    Severity,
    parse_enum,
    parse_optional_enum,
)
from soa_recon.reconciliation.services.collaborators import (
    AuditLog,
    CaseStore,
    NotificationDispatcher,
    SqlCaseStore,
    append_audit,
    dispatch_notification,
)
from soa_recon.reconciliation.services.discrepancy_detector import DetectionPlan, DiscrepancyDetector
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.reconciliation.services.summary import summarize
from soa_recon.services.audit import AuditAction, AuditLogEntry, ResourceType

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Event names for reconciliation log lines and notifications."""
    RUN_STARTED = "soa.run_started"
    RUN_COMPLETED = "soa.run_completed"
    MATCH_CREATED = "soa.match_created"
    MATCH_CONFIRMED = "soa.match_confirmed"
    MATCH_REJECTED = "soa.match_rejected"
    DISCREPANCY_CREATED = "soa.discrepancy_created"
    DISCREPANCY_UPDATED = "soa.discrepancy_updated"
    DISCREPANCY_RESOLVED = "soa.discrepancy_resolved"


def log_reconciliation_event(
    event_type: str,
    case_id: str,
    details: Dict[str, Any],
    match_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for the application log."""
    log_entry = {
        "event": event_type,
        "case_id": case_id,
        "match_id": match_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class LineLockRegistry:
    """
    Per-line asyncio locks, created on demand.

    Locks are held weakly: an entry disappears once no task holds or
    waits on it, so the registry does not grow with the number of lines.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, soa_item_id: str) -> asyncio.Lock:
        lock = self._locks.get(soa_item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[soa_item_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide so per-request services serialize on the same line.
default_line_locks = LineLockRegistry()


@dataclass
class ReconciliationRunResult:
    """Result of a batch matching run over one case."""
    run_id: str
    case_id: str
    vendor_id: str
    total_lines: int = 0
    proposed: int = 0
    deterministic: int = 0
    fuzzy: int = 0
    auto_confirmed: int = 0
    no_match: int = 0
    no_candidates: int = 0
    skipped: int = 0
    matches: List[Match] = field(default_factory=list)
    detection: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "case_id": self.case_id,
            "vendor_id": self.vendor_id,
            "total_lines": self.total_lines,
            "proposed": self.proposed,
            "deterministic": self.deterministic,
            "fuzzy": self.fuzzy,
            "auto_confirmed": self.auto_confirmed,
            "no_match": self.no_match,
            "no_candidates": self.no_candidates,
            "skipped": self.skipped,
            "matches": [m.to_dict() for m in self.matches],
            "detection": dict(self.detection),
        }


def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


def _to_decimal(value: Any, name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a decimal amount, got {value!r}")


class SOAReconciliationService:
    """
    Reconciliation state machine for SOA cases.

    Collaborators are injected; only the repository is mandatory. The
    case store defaults to the SQL store sharing the repository session.
    """

    def __init__(
        self,
        repository: SOARepository,
        matcher: Optional[SOAMatchingRules] = None,
        detector: Optional[DiscrepancyDetector] = None,
        case_store: Optional[CaseStore] = None,
        audit_log: Optional[AuditLog] = None,
        notifier: Optional[NotificationDispatcher] = None,
        line_locks: Optional[LineLockRegistry] = None,
    ):
        self.repository = repository
        self.matcher = matcher or SOAMatchingRules()
        self.detector = detector or DiscrepancyDetector()
        self.case_store = case_store or SqlCaseStore(repository)
        self.audit_log = audit_log
        self.notifier = notifier
        self.line_locks = line_locks or default_line_locks

    # ==================== HELPERS ====================

    async def _commit(self):
        try:
            await self.repository.commit()
        except Exception as e:
            logger.error(f"Failed to commit reconciliation change: {e}")
            await self.repository.rollback()
            raise

    async def _get_case(self, case_id: str, vendor_id: Optional[str] = None) -> CaseRecord:
        case = await self.case_store.get_case(case_id)
        if case is None or (vendor_id and case.vendor_id != vendor_id):
            raise NotFoundError(f"Case {case_id} not found" + (f" for vendor {vendor_id}" if vendor_id else ""))
        return case

    @staticmethod
    def _ensure_open(case: CaseRecord):
        if case.is_closed:
            raise InvalidStateError(f"Case {case.id} is closed")

    def _audit(
        self,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[str],
        case_id: Optional[str],
        user_id: Optional[str],
        details: Dict[str, Any]
    ):
        append_audit(self.audit_log, AuditLogEntry.build(
            action, resource_type,
            resource_id=resource_id, case_id=case_id, user_id=user_id, details=details
        ))

    # ==================== READS ====================

    async def list_statements(self, vendor_id: str) -> List[StatementSummary]:
        """A vendor's cases, newest first, each with its current summary."""
        vendor_id = _require(vendor_id, "vendor_id")
        statements = []
        for case in await self.repository.list_cases(vendor_id):
            statements.append(StatementSummary(case=case, summary=await self._summarize_case(case.id)))
        return statements

    async def list_lines(
        self,
        case_id: str,
        vendor_id: str,
        status: Optional[str] = None
    ) -> List[SOALine]:
        case_id = _require(case_id, "case_id")
        vendor_id = _require(vendor_id, "vendor_id")
        line_status = parse_optional_enum(LineStatus, status, "line status")
        await self._get_case(case_id, vendor_id)
        return await self.repository.list_lines(case_id, vendor_id, line_status)

    async def get_summary(self, case_id: str, vendor_id: str) -> CaseSummary:
        case_id = _require(case_id, "case_id")
        vendor_id = _require(vendor_id, "vendor_id")
        await self._get_case(case_id, vendor_id)
        return await self._summarize_case(case_id)

    async def _summarize_case(self, case_id: str) -> CaseSummary:
        lines = await self.repository.list_lines(case_id)
        matches = await self.repository.list_matches(case_id)
        discrepancies = await self.repository.list_discrepancies(case_id)
        return summarize(lines, matches, discrepancies)

    async def list_matches(self, case_id: str, status: Optional[str] = None) -> List[Match]:
        case_id = _require(case_id, "case_id")
        match_status = parse_optional_enum(MatchStatus, status, "match status")
        await self._get_case(case_id)
        return await self.repository.list_matches(case_id, match_status)

    async def get_match(self, match_id: str) -> Match:
        match_id = _require(match_id, "match_id")
        match = await self.repository.get_match(match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    async def list_discrepancies(self, case_id: str, status: Optional[str] = None) -> List[Discrepancy]:
        case_id = _require(case_id, "case_id")
        discrepancy_status = parse_optional_enum(DiscrepancyStatus, status, "discrepancy status")
        await self._get_case(case_id)
        return await self.repository.list_discrepancies(case_id, discrepancy_status)

    # ==================== MATCHING ====================

    async def run_matching(
        self,
        case_id: str,
        vendor_id: str,
        auto_confirm: Optional[bool] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationRunResult:
        """
        Match every extracted line of a case against the vendor ledger.

        Proposals are persisted as pending matches one line at a time.
        Lines claimed concurrently by another request are skipped. The
        loop yields to the event loop between lines so callers can bound
        the run with asyncio.wait_for.

        Args:
            case_id: Case to run
            vendor_id: Vendor owning the case
            auto_confirm: Confirm deterministic proposals; defaults to config
            user_id: Actor recorded on auto-confirmed matches

        Returns:
            ReconciliationRunResult with counts and created matches
        """
        case_id = _require(case_id, "case_id")
        vendor_id = _require(vendor_id, "vendor_id")
        case = await self._get_case(case_id, vendor_id)
        self._ensure_open(case)

        if auto_confirm is None:
            auto_confirm = self.matcher.config.auto_confirm_deterministic
        actor = user_id or MatchedBy.SYSTEM.value

        result = ReconciliationRunResult(run_id=str(uuid.uuid4()), case_id=case_id, vendor_id=vendor_id)
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            case_id,
            {"run_id": result.run_id, "vendor_id": vendor_id, "auto_confirm": auto_confirm},
            actor=actor
        )

        ledger = await self.repository.list_ledger_records(vendor_id)
        lines = await self.repository.list_lines(case_id, vendor_id, LineStatus.EXTRACTED)
        result.total_lines = len(lines)

        for line in lines:
            await asyncio.sleep(0)

            try:
                proposal = self.matcher.propose(line, ledger)
            except NoCandidateError:
                result.no_candidates += 1
                continue

            if proposal is None:
                result.no_match += 1
                continue

            confirm = auto_confirm and proposal.match_type == MatchType.DETERMINISTIC
            try:
                match = await self._persist_match(
                    proposal, MatchedBy.SYSTEM, actor=actor, confirm=confirm
                )
            except (ConflictError, InvalidStateError) as e:
                logger.info(f"Skipping SOA line {line.id}: {e}")
                result.skipped += 1
                continue

            result.proposed += 1
            result.matches.append(match)
            if match.match_type == MatchType.DETERMINISTIC:
                result.deterministic += 1
            else:
                result.fuzzy += 1
            if match.status == MatchStatus.CONFIRMED:
                result.auto_confirmed += 1

        try:
            plan = await self._apply_detection(case)
            await self._commit()
        except Exception:
            await self.repository.rollback()
            raise
        await self._after_detection(case_id, plan)
        result.detection = plan.to_dict()

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            case_id,
            {k: v for k, v in result.to_dict().items() if k != "matches"},
            actor=actor
        )
        self._audit(
            AuditAction.MATCH_RUN, ResourceType.CASE, case_id, case_id, user_id,
            {k: v for k, v in result.to_dict().items() if k != "matches"}
        )
        return result

    async def propose_and_create_match(
        self,
        soa_item_id: str,
        invoice_id: Optional[str] = None,
        data: Optional[MatchData] = None,
        user_id: Optional[str] = None
    ) -> Optional[Match]:
        """
        Create a match for one line.

        With an invoice id the pair is scored and created as a manual
        match (or with the caller's metadata when ``data`` is given).
        Without one the matcher runs over the vendor ledger; returns None
        when it proposes nothing.
        """
        soa_item_id = _require(soa_item_id, "soa_item_id")
        line = await self.repository.get_line(soa_item_id)
        if line is None:
            raise NotFoundError(f"SOA line {soa_item_id} not found")

        if invoice_id:
            if data is None:
                record = await self.repository.get_ledger_record(invoice_id)
                if record is None:
                    raise NotFoundError(f"Ledger record {invoice_id} not found")
                data = MatchData.from_match(self.matcher.evaluate(line, record), matched_by=MatchedBy.MANUAL)
            return await self.create_match(soa_item_id, invoice_id, data, user_id=user_id)

        ledger = await self.repository.list_ledger_records(line.vendor_id)
        proposal = self.matcher.propose(line, ledger)
        if proposal is None:
            logger.info(f"No match proposed for SOA line {soa_item_id}")
            return None
        return await self.create_match(
            soa_item_id, proposal.invoice_id, data or MatchData.from_match(proposal), user_id=user_id
        )

    async def create_match(
        self,
        soa_item_id: str,
        invoice_id: str,
        data: Optional[MatchData] = None,
        user_id: Optional[str] = None
    ) -> Match:
        """
        Persist a pending match and mark the line matched.

        Raises:
            ValidationError: missing ids, bad enums or out-of-range scores
            NotFoundError: unknown line or ledger record
            ConflictError: the line already has a non-rejected match
            InvalidStateError: line disputed or case closed
        """
        if not soa_item_id or not invoice_id:
            raise ValidationError("create_match requires both soa_item_id and invoice_id")
        data = data or MatchData()

        match_type = parse_enum(MatchType, data.match_type, "match_type")
        matched_by = parse_enum(MatchedBy, data.matched_by, "matched_by")
        try:
            confidence = float(data.confidence)
        except (TypeError, ValueError):
            raise ValidationError(f"confidence must be a number, got {data.confidence!r}")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"confidence must be between 0 and 1, got {confidence}")
        if isinstance(data.match_score, bool) or not isinstance(data.match_score, int):
            raise ValidationError(f"match_score must be an integer, got {data.match_score!r}")
        if not 0 <= data.match_score <= 100:
            raise ValidationError(f"match_score must be between 0 and 100, got {data.match_score}")
        if match_type == MatchType.DETERMINISTIC and not data.is_exact_match:
            raise ValidationError("Deterministic matches must be exact")

        criteria = data.match_criteria
        if isinstance(criteria, dict):
            criteria = MatchCriteria.from_dict(criteria)

        line = await self.repository.get_line(soa_item_id)
        if line is None:
            raise NotFoundError(f"SOA line {soa_item_id} not found")
        record = await self.repository.get_ledger_record(invoice_id)
        if record is None:
            raise NotFoundError(f"Ledger record {invoice_id} not found")
        if record.vendor_id != line.vendor_id:
            raise ValidationError(f"Ledger record {invoice_id} belongs to a different vendor")

        proposal = Match(
            soa_item_id=line.id,
            invoice_id=record.id,
            case_id=line.case_id,
            match_type=match_type,
            is_exact_match=bool(data.is_exact_match),
            confidence=confidence,
            match_score=data.match_score,
            match_criteria=criteria or MatchCriteria(),
            soa_amount=line.amount,
            invoice_amount=record.total_amount,
            soa_date=line.invoice_date,
            invoice_date=record.invoice_date,
        )
        return await self._persist_match(proposal, matched_by, actor=user_id or matched_by.value)

    async def _persist_match(
        self,
        proposal: Match,
        matched_by: MatchedBy,
        actor: str,
        confirm: bool = False
    ) -> Match:
        """Insert a match and flip its line to matched, serialized per line."""
        async with self.line_locks.lock_for(proposal.soa_item_id):
            try:
                line = await self.repository.get_line(proposal.soa_item_id)
                if line is None:
                    raise NotFoundError(f"SOA line {proposal.soa_item_id} not found")
                case = await self._get_case(line.case_id)
                self._ensure_open(case)
                if line.status == LineStatus.DISPUTED:
                    raise InvalidStateError(f"SOA line {line.id} is disputed")

                existing = await self.repository.get_active_match_for_line(line.id)
                if existing is not None:
                    raise ConflictError(
                        f"SOA line {line.id} already has a {existing.status.value} match {existing.id}"
                    )

                proposal.matched_by = matched_by
                proposal.status = MatchStatus.PENDING
                created = await self.repository.add_match(proposal)
                await self.repository.set_line_status(line.id, LineStatus.MATCHED)
                if confirm:
                    await self.repository.confirm_pending_match(created.id, actor)
                await self.repository.commit()
            except IntegrityError as e:
                await self.repository.rollback()
                raise ConflictError(f"SOA line {proposal.soa_item_id} already has an active match") from e
            except Exception:
                await self.repository.rollback()
                raise

        match = await self.repository.get_match(created.id)
        details = {
            "soa_item_id": match.soa_item_id,
            "invoice_id": match.invoice_id,
            "match_type": match.match_type.value,
            "confidence": match.confidence,
            "match_score": match.match_score,
            "matched_by": match.matched_by.value,
        }
        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_CREATED, match.case_id, details, match_id=match.id, actor=actor
        )
        self._audit(AuditAction.MATCH_CREATE, ResourceType.MATCH, match.id, match.case_id, actor, details)
        if match.status == MatchStatus.CONFIRMED:
            self._audit(
                AuditAction.MATCH_CONFIRM, ResourceType.MATCH, match.id, match.case_id, actor,
                {"soa_item_id": match.soa_item_id, "auto_confirmed": True}
            )
        return match

    async def confirm_match(self, match_id: str, user_id: str) -> Match:
        """
        Confirm a pending match and re-run discrepancy detection.

        Raises:
            NotFoundError: unknown match
            InvalidStateError: match is not pending, or the case is closed
        """
        match_id = _require(match_id, "match_id")
        user_id = _require(user_id, "user_id")
        match = await self.get_match(match_id)
        if match.status != MatchStatus.PENDING:
            raise InvalidStateError(f"Match {match_id} is {match.status.value}; only pending matches can be confirmed")
        case = await self._get_case(match.case_id)
        self._ensure_open(case)

        try:
            if not await self.repository.confirm_pending_match(match_id, user_id):
                raise InvalidStateError(f"Match {match_id} is no longer pending")
            plan = await self._apply_detection(case)
            await self._commit()
        except Exception:
            await self.repository.rollback()
            raise

        details = {"soa_item_id": match.soa_item_id, "invoice_id": match.invoice_id}
        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_CONFIRMED, match.case_id, details, match_id=match_id, actor=user_id
        )
        self._audit(AuditAction.MATCH_CONFIRM, ResourceType.MATCH, match_id, match.case_id, user_id, details)
        await self._after_detection(match.case_id, plan)
        return await self.get_match(match_id)

    async def reject_match(self, match_id: str, user_id: str, reason: str) -> Match:
        """
        Reject a pending match, return its line to the pool and re-run detection.

        Raises:
            ValidationError: reason missing
            NotFoundError: unknown match
            InvalidStateError: match is not pending, or the case is closed
        """
        match_id = _require(match_id, "match_id")
        user_id = _require(user_id, "user_id")
        reason = _require(reason, "reason")
        match = await self.get_match(match_id)
        if match.status != MatchStatus.PENDING:
            raise InvalidStateError(f"Match {match_id} is {match.status.value}; only pending matches can be rejected")
        case = await self._get_case(match.case_id)
        self._ensure_open(case)

        async with self.line_locks.lock_for(match.soa_item_id):
            try:
                if not await self.repository.reject_pending_match(match_id, user_id, reason):
                    raise InvalidStateError(f"Match {match_id} is no longer pending")
                line = await self.repository.get_line(match.soa_item_id)
                if line is not None and line.status == LineStatus.MATCHED:
                    await self.repository.set_line_status(line.id, LineStatus.EXTRACTED)
                plan = await self._apply_detection(case)
                await self._commit()
            except Exception:
                await self.repository.rollback()
                raise

        details = {"soa_item_id": match.soa_item_id, "invoice_id": match.invoice_id, "reason": reason}
        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_REJECTED, match.case_id, details, match_id=match_id, actor=user_id
        )
        self._audit(AuditAction.MATCH_REJECT, ResourceType.MATCH, match_id, match.case_id, user_id, details)
        await self._after_detection(match.case_id, plan)
        return await self.get_match(match_id)

    # ==================== DISCREPANCIES ====================

    async def create_discrepancy(
        self,
        case_id: str,
        data: DiscrepancyData,
        user_id: Optional[str] = None
    ) -> Discrepancy:
        """
        Raise a discrepancy by hand. Always created open.

        Raises:
            ValidationError: case id missing or enums invalid
            NotFoundError: unknown case or SOA line
            InvalidStateError: case closed
        """
        case_id = _require(case_id, "case_id")
        if data is None:
            raise ValidationError("Discrepancy data is required")
        discrepancy_type = parse_enum(DiscrepancyType, data.discrepancy_type, "discrepancy_type")
        severity = parse_enum(Severity, data.severity, "severity")
        detected_by = parse_enum(DetectedBy, data.detected_by, "detected_by")
        amount_delta = _to_decimal(data.amount_delta, "amount_delta")

        case = await self._get_case(case_id)
        self._ensure_open(case)
        for line_id in [data.soa_item_id, *data.related_soa_item_ids]:
            if not line_id:
                continue
            line = await self.repository.get_line(line_id)
            if line is None or line.case_id != case_id:
                raise NotFoundError(f"SOA line {line_id} not found in case {case_id}")

        try:
            created = await self.repository.add_discrepancy(Discrepancy(
                case_id=case_id,
                soa_item_id=data.soa_item_id,
                match_id=data.match_id,
                invoice_id=data.invoice_id,
                related_soa_item_ids=list(data.related_soa_item_ids),
                discrepancy_type=discrepancy_type,
                severity=severity,
                description=data.description or "",
                amount_delta=amount_delta,
                detected_by=detected_by,
            ))
            await self._commit()
        except Exception:
            await self.repository.rollback()
            raise

        self._announce_discrepancy(created, user_id)
        return created

    async def resolve_discrepancy(
        self,
        discrepancy_id: str,
        user_id: str,
        data: Optional[ResolutionData] = None
    ) -> Discrepancy:
        """
        Resolve an open discrepancy.

        Raises:
            NotFoundError: unknown discrepancy
            InvalidStateError: not open, or the case is closed
        """
        discrepancy_id = _require(discrepancy_id, "discrepancy_id")
        user_id = _require(user_id, "user_id")
        data = data or ResolutionData()
        action = parse_enum(ResolutionAction, data.action, "resolution action")

        discrepancy = await self.repository.get_discrepancy(discrepancy_id)
        if discrepancy is None:
            raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
        if not discrepancy.is_open:
            raise InvalidStateError(f"Discrepancy {discrepancy_id} is already {discrepancy.status.value}")
        case = await self._get_case(discrepancy.case_id)
        self._ensure_open(case)

        try:
            if not await self.repository.resolve_open_discrepancy(discrepancy_id, user_id, data.notes, action):
                raise InvalidStateError(f"Discrepancy {discrepancy_id} is no longer open")
            await self._commit()
        except Exception:
            await self.repository.rollback()
            raise

        details = {
            "discrepancy_type": discrepancy.discrepancy_type.value,
            "action": action.value,
            "notes": data.notes,
        }
        log_reconciliation_event(
            ReconciliationAuditEvent.DISCREPANCY_RESOLVED, discrepancy.case_id, details, actor=user_id
        )
        self._audit(
            AuditAction.DISCREPANCY_RESOLVE, ResourceType.DISCREPANCY, discrepancy_id,
            discrepancy.case_id, user_id, details
        )
        return await self.repository.get_discrepancy(discrepancy_id)

    async def detect_discrepancies(self, case_id: str) -> DetectionPlan:
        """Run the detector over a case and persist its plan."""
        case_id = _require(case_id, "case_id")
        case = await self._get_case(case_id)
        self._ensure_open(case)
        try:
            plan = await self._apply_detection(case)
            await self._commit()
        except Exception:
            await self.repository.rollback()
            raise
        await self._after_detection(case_id, plan)
        return plan

    async def _apply_detection(self, case: CaseRecord) -> DetectionPlan:
        """Plan and write discrepancies inside the caller's transaction."""
        lines = await self.repository.list_lines(case.id)
        matches = await self.repository.list_matches(case.id)
        ledger: List[LedgerRecord] = await self.repository.list_ledger_records(case.vendor_id)
        existing = await self.repository.list_discrepancies(case.id)

        plan = self.detector.detect(case.id, lines, matches, ledger, existing)
        plan.to_create = [await self.repository.add_discrepancy(d) for d in plan.to_create]
        for discrepancy in plan.to_update:
            await self.repository.refresh_open_discrepancy(discrepancy)
        return plan

    async def _after_detection(self, case_id: str, plan: DetectionPlan):
        for discrepancy in plan.to_create:
            self._announce_discrepancy(discrepancy, None)
        for discrepancy in plan.to_update:
            details = {
                "discrepancy_type": discrepancy.discrepancy_type.value,
                "amount_delta": str(discrepancy.amount_delta) if discrepancy.amount_delta is not None else None,
            }
            log_reconciliation_event(ReconciliationAuditEvent.DISCREPANCY_UPDATED, case_id, details)
            self._audit(
                AuditAction.DISCREPANCY_UPDATE, ResourceType.DISCREPANCY, discrepancy.id, case_id, None, details
            )

    def _announce_discrepancy(self, discrepancy: Discrepancy, user_id: Optional[str]):
        details = {
            "discrepancy_type": discrepancy.discrepancy_type.value,
            "severity": discrepancy.severity.value,
            "soa_item_id": discrepancy.soa_item_id,
            "amount_delta": str(discrepancy.amount_delta) if discrepancy.amount_delta is not None else None,
            "detected_by": discrepancy.detected_by.value,
        }
        log_reconciliation_event(
            ReconciliationAuditEvent.DISCREPANCY_CREATED, discrepancy.case_id, details,
            actor=user_id or discrepancy.detected_by.value
        )
        self._audit(
            AuditAction.DISCREPANCY_CREATE, ResourceType.DISCREPANCY, discrepancy.id,
            discrepancy.case_id, user_id, details
        )
        dispatch_notification(
            self.notifier, discrepancy.case_id, ReconciliationAuditEvent.DISCREPANCY_CREATED,
            {"discrepancy_id": discrepancy.id, **details}
        )
