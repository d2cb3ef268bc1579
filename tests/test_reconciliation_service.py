"""
SOA Reconciliation Service Tests

Runs the reconciliation state machine against a SQLite database:
- Batch matching (deterministic, ambiguous, fuzzy, no candidates)
- Match lifecycle: create, confirm, reject, re-propose
- Single active match per line, including concurrent creates
- Discrepancy detection, manual discrepancies and resolution
- Audit / notification side channels

Run with: pytest tests/test_reconciliation_service.py -v
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import OTHER_VENDOR_ID, USER_ID, VENDOR_ID, make_line, make_record, seed_case
from soa_recon.reconciliation.errors import (
    ConflictError,
    InvalidStateError,
    NoCandidateError,
    NotFoundError,
    ValidationError,
)
from soa_recon.reconciliation.matching_rules import SOAMatchingRules
from soa_recon.reconciliation.models import DiscrepancyData, Match, MatchData, ResolutionData
from soa_recon.reconciliation.registry import (
    CaseStatus,
    DiscrepancyStatus,
    DiscrepancyType,
    LineStatus,
    MatchedBy,
    MatchingConfig,
    MatchStatus,
    MatchType,
    ResolutionAction,
)
from soa_recon.reconciliation.services.collaborators import drain_notifications
from soa_recon.reconciliation.services.reconciliation_service import (
    LineLockRegistry,
    ReconciliationAuditEvent,
    SOAReconciliationService,
)
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.services.audit import AuditAction


STATEMENT_DATE = date(2026, 3, 1)


def exact_pair(line_id="L1", record_id="R1", amount="1000.00", number="INV-1"):
    return (
        make_line(line_id, amount, number, STATEMENT_DATE),
        make_record(record_id, amount, number, STATEMENT_DATE),
    )


class TestMatchingRun:
    """Batch matching over a case."""

    @pytest.mark.asyncio
    async def test_deterministic_match_marks_line_matched(self, repo, service, audit_log):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.total_lines == 1
        assert result.proposed == 1
        assert result.deterministic == 1
        assert result.auto_confirmed == 0

        match = result.matches[0]
        assert match.match_type == MatchType.DETERMINISTIC
        assert match.confidence == 1.0
        assert match.status == MatchStatus.PENDING
        assert match.matched_by == MatchedBy.SYSTEM

        stored_line = await repo.get_line("L1")
        assert stored_line.status == LineStatus.MATCHED

        actions = [entry.action for entry in audit_log.get_logs(case_id="case-1")]
        assert AuditAction.MATCH_RUN.value in actions
        assert AuditAction.MATCH_CREATE.value in actions

    @pytest.mark.asyncio
    async def test_auto_confirm_deterministic(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        result = await service.run_matching("case-1", VENDOR_ID, auto_confirm=True, user_id=USER_ID)

        assert result.auto_confirmed == 1
        assert result.matches[0].status == MatchStatus.CONFIRMED
        assert result.matches[0].confirmed_by == USER_ID

    @pytest.mark.asyncio
    async def test_ambiguous_candidates_leave_line_extracted(self, repo, audit_log):
        far = STATEMENT_DATE + timedelta(days=60)
        await seed_case(
            repo,
            lines=[make_line("L1", "500.00", "INV-9", STATEMENT_DATE)],
            records=[make_record("R1", "500.00", "INV-9", far), make_record("R2", "500.00", "INV-9", far)],
        )
        service = SOAReconciliationService(
            repo,
            matcher=SOAMatchingRules(MatchingConfig(min_confidence=0.95)),
            audit_log=audit_log,
            line_locks=LineLockRegistry(),
        )

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.proposed == 0
        assert result.no_match == 1
        assert await repo.list_matches("case-1") == []
        assert (await repo.get_line("L1")).status == LineStatus.EXTRACTED

    @pytest.mark.asyncio
    async def test_vendor_without_ledger_counts_no_candidates(self, repo, service):
        await seed_case(repo, lines=[make_line("L1", "300.00", "INV-3", STATEMENT_DATE)])

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.no_candidates == 1
        assert result.proposed == 0
        # the unmatched line is flagged as missing
        discrepancies = await service.list_discrepancies("case-1")
        assert [d.discrepancy_type for d in discrepancies] == [DiscrepancyType.MISSING_INVOICE]
        assert result.detection["created"] == 1

    @pytest.mark.asyncio
    async def test_two_lines_claiming_one_record_raise_duplicate_claim(self, repo, service):
        await seed_case(
            repo,
            lines=[
                make_line("L1", "499.50", "INV500X", STATEMENT_DATE, line_number=1),
                make_line("L2", "500.00", "INV-500-B", STATEMENT_DATE, line_number=2),
            ],
            records=[make_record("R1", "500.00", "INV-500", STATEMENT_DATE)],
        )

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.fuzzy == 2
        assert {m.invoice_id for m in result.matches} == {"R1"}

        discrepancies = await service.list_discrepancies("case-1")
        assert len(discrepancies) == 1
        duplicate = discrepancies[0]
        assert duplicate.discrepancy_type == DiscrepancyType.DUPLICATE_CLAIM
        assert duplicate.related_soa_item_ids == ["L1", "L2"]
        assert duplicate.amount_delta == Decimal("499.50")

        # a second detection pass over the same state changes nothing
        plan = await service.detect_discrepancies("case-1")
        assert plan.is_empty
        assert len(await service.list_discrepancies("case-1")) == 1

    @pytest.mark.asyncio
    async def test_partial_line_is_offered_the_larger_invoice(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "400.00", "INV-1", STATEMENT_DATE, allow_partial=True)],
            records=[make_record("R1", "1000.00", "INV-1", STATEMENT_DATE)],
        )
        assert (await repo.get_line("L1")).allow_partial is True

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.proposed == 1
        assert result.fuzzy == 1
        [match] = await repo.list_matches("case-1")
        assert match.invoice_id == "R1"
        assert match.match_criteria.extra == {"partial": True, "remaining_amount": "600.00"}
        assert (await repo.get_line("L1")).status == LineStatus.MATCHED

    @pytest.mark.asyncio
    async def test_unknown_case_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.run_matching("missing-case", VENDOR_ID)

    @pytest.mark.asyncio
    async def test_wrong_vendor_is_not_found(self, repo, service):
        await seed_case(repo)

        with pytest.raises(NotFoundError):
            await service.run_matching("case-1", OTHER_VENDOR_ID)


class TestMatchLifecycle:
    """Create, confirm, reject."""

    @pytest.mark.asyncio
    async def test_confirm_rejected_match_is_invalid(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        match = await service.propose_and_create_match("L1")

        await service.reject_match(match.id, USER_ID, "wrong invoice")

        with pytest.raises(InvalidStateError):
            await service.confirm_match(match.id, USER_ID)

    @pytest.mark.asyncio
    async def test_reject_then_repropose_then_confirm(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        first = await service.propose_and_create_match("L1")
        rejected = await service.reject_match(first.id, USER_ID, "needs review")
        assert rejected.status == MatchStatus.REJECTED
        assert rejected.rejection_reason == "needs review"
        assert (await repo.get_line("L1")).status == LineStatus.EXTRACTED

        second = await service.propose_and_create_match("L1")
        assert second.id != first.id

        confirmed = await service.confirm_match(second.id, USER_ID)
        assert confirmed.status == MatchStatus.CONFIRMED
        assert confirmed.confirmed_by == USER_ID
        assert confirmed.confirmed_at is not None

        statuses = sorted(m.status.value for m in await service.list_matches("case-1"))
        assert statuses == ["confirmed", "rejected"]

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        match = await service.propose_and_create_match("L1")

        with pytest.raises(ValidationError):
            await service.reject_match(match.id, USER_ID, "  ")

    @pytest.mark.asyncio
    async def test_confirm_twice_is_invalid(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        match = await service.propose_and_create_match("L1")
        await service.confirm_match(match.id, USER_ID)

        with pytest.raises(InvalidStateError):
            await service.confirm_match(match.id, USER_ID)

    @pytest.mark.asyncio
    async def test_manual_match_is_scored(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "1000.00", "INV-7", STATEMENT_DATE)],
            records=[make_record("R1", "990.00", "INV-7", STATEMENT_DATE)],
        )

        match = await service.propose_and_create_match("L1", "R1", user_id=USER_ID)

        assert match.matched_by == MatchedBy.MANUAL
        assert match.match_type == MatchType.FUZZY
        assert match.invoice_amount == Decimal("990.00")

    @pytest.mark.asyncio
    async def test_confirmed_mismatch_raises_amount_discrepancy(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "1000.00", "INV-7", STATEMENT_DATE)],
            records=[make_record("R1", "990.00", "INV-7", STATEMENT_DATE)],
        )
        match = await service.propose_and_create_match("L1", "R1")
        assert await service.list_discrepancies("case-1") == []

        await service.confirm_match(match.id, USER_ID)

        discrepancies = await service.list_discrepancies("case-1")
        assert len(discrepancies) == 1
        assert discrepancies[0].discrepancy_type == DiscrepancyType.AMOUNT_MISMATCH
        assert discrepancies[0].amount_delta == Decimal("10.00")
        assert discrepancies[0].match_id == match.id

    @pytest.mark.asyncio
    async def test_no_candidates_persists_nothing(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "100.00", "INV-1")],
            records=[make_record("R1", "100.00", "INV-1", vendor_id=OTHER_VENDOR_ID)],
        )

        with pytest.raises(NoCandidateError):
            await service.propose_and_create_match("L1")

        assert await repo.list_matches("case-1") == []
        assert (await repo.get_line("L1")).status == LineStatus.EXTRACTED

    @pytest.mark.asyncio
    async def test_unknown_match_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.confirm_match("no-such-match", USER_ID)


class TestCreateMatchValidation:

    @pytest.mark.asyncio
    async def test_missing_ids(self, service):
        with pytest.raises(ValidationError):
            await service.create_match("L1", "")

    @pytest.mark.asyncio
    async def test_deterministic_must_be_exact(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        with pytest.raises(ValidationError):
            await service.create_match("L1", "R1", MatchData(match_type="deterministic", is_exact_match=False))

    @pytest.mark.asyncio
    async def test_unknown_match_type(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        with pytest.raises(ValidationError):
            await service.create_match("L1", "R1", MatchData(match_type="probable"))

    @pytest.mark.asyncio
    async def test_score_out_of_range(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])

        with pytest.raises(ValidationError):
            await service.create_match("L1", "R1", MatchData(confidence=1.5))
        with pytest.raises(ValidationError):
            await service.create_match("L1", "R1", MatchData(match_score=101))

    @pytest.mark.asyncio
    async def test_other_vendor_record(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "100.00", "INV-1")],
            records=[make_record("R9", "100.00", "INV-1", vendor_id=OTHER_VENDOR_ID)],
        )

        with pytest.raises(ValidationError):
            await service.create_match("L1", "R9")


class TestSingleActiveMatch:
    """At most one non-rejected match per line."""

    @pytest.mark.asyncio
    async def test_second_match_conflicts(self, repo, service):
        await seed_case(
            repo,
            lines=[make_line("L1", "100.00", "INV-1")],
            records=[make_record("R1", "100.00", "INV-1"), make_record("R2", "100.00", "INV-2")],
        )
        await service.create_match("L1", "R1")

        with pytest.raises(ConflictError):
            await service.create_match("L1", "R2")

        assert len(await repo.list_matches("case-1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_match(self, session_factory):
        async with session_factory() as seed_session:
            await seed_case(
                SOARepository(seed_session),
                lines=[make_line("L1", "100.00", "INV-1")],
                records=[make_record("R1", "100.00", "INV-1"), make_record("R2", "100.00", "INV-2")],
            )

        locks = LineLockRegistry()
        async with session_factory() as first, session_factory() as second:
            results = await asyncio.gather(
                SOAReconciliationService(SOARepository(first), line_locks=locks).create_match("L1", "R1"),
                SOAReconciliationService(SOARepository(second), line_locks=locks).create_match("L1", "R2"),
                return_exceptions=True,
            )

        created = [r for r in results if isinstance(r, Match)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 1

        async with session_factory() as check_session:
            matches = await SOARepository(check_session).list_matches("case-1")
        assert [m.id for m in matches] == [created[0].id]

    def test_lock_registry_reuses_and_releases(self):
        registry = LineLockRegistry()
        lock = registry.lock_for("L1")

        assert registry.lock_for("L1") is lock
        assert len(registry) == 1

        del lock
        assert len(registry) == 0


class TestDiscrepancies:
    """Manual discrepancies and resolution."""

    @pytest.mark.asyncio
    async def test_create_and_resolve(self, repo, service, audit_log):
        await seed_case(repo, lines=[make_line("L1", "100.00", "INV-1")])

        discrepancy = await service.create_discrepancy(
            "case-1",
            DiscrepancyData(discrepancy_type="other", severity="low", description="Vendor query", soa_item_id="L1"),
            user_id=USER_ID,
        )
        assert discrepancy.status == DiscrepancyStatus.OPEN
        assert discrepancy.detected_by.value == "manual"

        resolved = await service.resolve_discrepancy(
            discrepancy.id, USER_ID, ResolutionData(notes="Credit note received", action="waived")
        )
        assert resolved.status == DiscrepancyStatus.RESOLVED
        assert resolved.resolved_by == USER_ID
        assert resolved.resolution_action == ResolutionAction.WAIVED
        assert resolved.resolution_notes == "Credit note received"

        with pytest.raises(InvalidStateError):
            await service.resolve_discrepancy(discrepancy.id, USER_ID)

        actions = [entry.action for entry in audit_log.get_logs(case_id="case-1")]
        assert AuditAction.DISCREPANCY_CREATE.value in actions
        assert AuditAction.DISCREPANCY_RESOLVE.value in actions

    @pytest.mark.asyncio
    async def test_resolved_detection_is_not_raised_again(self, repo, service):
        await seed_case(repo, lines=[make_line("L1", "300.00", "INV-3", STATEMENT_DATE)])
        await service.run_matching("case-1", VENDOR_ID)
        [missing] = await service.list_discrepancies("case-1")

        await service.resolve_discrepancy(missing.id, USER_ID)
        plan = await service.detect_discrepancies("case-1")

        assert plan.to_create == []
        assert await service.list_discrepancies("case-1", status="open") == []

    @pytest.mark.asyncio
    async def test_unknown_line_is_not_found(self, repo, service):
        await seed_case(repo)

        with pytest.raises(NotFoundError):
            await service.create_discrepancy("case-1", DiscrepancyData(discrepancy_type="other", soa_item_id="nope"))

    @pytest.mark.asyncio
    async def test_unknown_type_is_invalid(self, repo, service):
        await seed_case(repo)

        with pytest.raises(ValidationError):
            await service.create_discrepancy("case-1", DiscrepancyData(discrepancy_type="typo"))


class TestReads:

    @pytest.mark.asyncio
    async def test_list_lines_by_status(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line, make_line("L2", "5.00", "X-1", STATEMENT_DATE)], records=[record])
        await service.run_matching("case-1", VENDOR_ID)

        matched = await service.list_lines("case-1", VENDOR_ID, status="matched")

        assert [line.id for line in matched] == ["L1"]
        with pytest.raises(ValidationError):
            await service.list_lines("case-1", VENDOR_ID, status="unknown")

    @pytest.mark.asyncio
    async def test_statements_carry_summaries(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        await seed_case(repo, case_id="case-2")

        statements = await service.list_statements(VENDOR_ID)

        assert {s.case.id for s in statements} == {"case-1", "case-2"}
        by_case = {s.case.id: s.summary for s in statements}
        assert by_case["case-1"].total_amount == Decimal("1000.00")
        assert by_case["case-2"].total_lines == 0

    @pytest.mark.asyncio
    async def test_summary_wrong_vendor(self, repo, service):
        await seed_case(repo)

        with pytest.raises(NotFoundError):
            await service.get_summary("case-1", OTHER_VENDOR_ID)


class TestClosedCase:

    @pytest.mark.asyncio
    async def test_mutations_rejected_on_closed_case(self, repo, service):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        await repo.set_case_status("case-1", CaseStatus.CLOSED)
        await repo.commit()

        with pytest.raises(InvalidStateError):
            await service.run_matching("case-1", VENDOR_ID)
        with pytest.raises(InvalidStateError):
            await service.create_match("L1", "R1")
        assert await repo.list_matches("case-1") == []


class TestSideChannels:
    """Audit and notification failures never undo the primary operation."""

    @pytest.mark.asyncio
    async def test_audit_failure_is_tolerated(self, repo):
        line, record = exact_pair()
        await seed_case(repo, lines=[line], records=[record])
        broken_audit = MagicMock()
        broken_audit.append.side_effect = OSError("disk full")
        service = SOAReconciliationService(repo, audit_log=broken_audit, line_locks=LineLockRegistry())

        match = await service.create_match("L1", "R1")

        assert match.id is not None
        broken_audit.append.assert_called()
        assert len(await repo.list_matches("case-1")) == 1

    @pytest.mark.asyncio
    async def test_notifier_receives_discrepancies(self, repo):
        await seed_case(repo, lines=[make_line("L1", "300.00", "INV-3", STATEMENT_DATE)])
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        service = SOAReconciliationService(repo, notifier=notifier, line_locks=LineLockRegistry())

        await service.run_matching("case-1", VENDOR_ID)

        await drain_notifications()
        notifier.notify.assert_awaited_once()
        case_id, event_type, payload = notifier.notify.await_args.args
        assert case_id == "case-1"
        assert event_type == ReconciliationAuditEvent.DISCREPANCY_CREATED
        assert payload["discrepancy_type"] == "missing_invoice"

    @pytest.mark.asyncio
    async def test_notifier_failure_is_tolerated(self, repo):
        await seed_case(repo, lines=[make_line("L1", "300.00", "INV-3", STATEMENT_DATE)])
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("queue down"))
        service = SOAReconciliationService(repo, notifier=notifier, line_locks=LineLockRegistry())

        result = await service.run_matching("case-1", VENDOR_ID)

        assert result.detection["created"] == 1
        assert len(await service.list_discrepancies("case-1")) == 1
        await drain_notifications()
        notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slow_notifier_does_not_hold_up_the_run(self, repo):
        await seed_case(repo, lines=[make_line("L1", "300.00", "INV-3", STATEMENT_DATE)])
        release = asyncio.Event()
        delivered = []

        async def slow_notify(case_id, event_type, payload):
            await release.wait()
            delivered.append(event_type)

        notifier = MagicMock()
        notifier.notify = slow_notify
        service = SOAReconciliationService(repo, notifier=notifier, line_locks=LineLockRegistry())

        result = await asyncio.wait_for(service.run_matching("case-1", VENDOR_ID), timeout=5)

        assert result.detection["created"] == 1
        assert delivered == []

        release.set()
        await drain_notifications()
        assert delivered == [ReconciliationAuditEvent.DISCREPANCY_CREATED]
