"""
SOA Sign-off Coordinator

Validates sign-off preconditions, records the acknowledgement with a
snapshot of the case summary and closes the case. This is the only code
path that closes a case.

Gating:
- full: no discrepancy lines, no open discrepancies, no pending matches
- partial / with_exceptions: always allowed; open items go into the notes
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from soa_recon.reconciliation.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from soa_recon.reconciliation.models import Acknowledgement, AcknowledgementData, CaseSummary, Discrepancy
from soa_recon.reconciliation.registry import AcknowledgementType, CaseStatus, parse_enum
from soa_recon.reconciliation.services.collaborators import (
    AuditLog,
    CaseStore,
    NotificationDispatcher,
    SqlCaseStore,
    append_audit,
    dispatch_notification,
)
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.reconciliation.services.summary import summarize
from soa_recon.services.audit import AuditAction, AuditLogEntry, ResourceType


logger = logging.getLogger(__name__)

CASE_SIGNED_OFF = "soa.case_signed_off"


def describe_open_items(
    summary: CaseSummary,
    include_unmatched: bool = True,
    discrepancies: Iterable[Discrepancy] = (),
) -> List[str]:
    """
    Human-readable list of the items still open on a case.

    Open discrepancies are listed one by one. Detection never closes a
    discrepancy, even when its cause has gone (a rejected duplicate claim,
    say), so each stays open until a reviewer resolves it.
    """
    items = []
    if summary.discrepancy_lines:
        items.append(f"{summary.discrepancy_lines} line(s) with discrepancies totalling {summary.discrepancy_amount}")
    if summary.open_discrepancies:
        items.append(f"{summary.open_discrepancies} open discrepancy record(s)")
    if summary.pending_lines:
        items.append(f"{summary.pending_lines} pending match(es) totalling {summary.pending_amount}")
    if include_unmatched and summary.unmatched_lines:
        items.append(f"{summary.unmatched_lines} unmatched line(s) totalling {summary.unmatched_amount}")
    for discrepancy in discrepancies:
        if discrepancy.is_open:
            items.append(
                f"{discrepancy.discrepancy_type.value} on line {discrepancy.soa_item_id} "
                f"({discrepancy.detected_by.value}-detected) is open until resolved"
            )
    return items


class SignOffCoordinator:
    """Records acknowledgements and closes cases."""

    def __init__(
        self,
        repository: SOARepository,
        case_store: Optional[CaseStore] = None,
        audit_log: Optional[AuditLog] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.repository = repository
        self.case_store = case_store or SqlCaseStore(repository)
        self.audit_log = audit_log
        self.notifier = notifier

    async def sign_off(
        self,
        case_id: str,
        vendor_id: str,
        user_id: str,
        data: Optional[AcknowledgementData] = None
    ) -> Acknowledgement:
        """
        Sign off a case.

        Args:
            case_id: Case to close
            vendor_id: Vendor owning the case
            user_id: Signing user
            data: Acknowledgement type and notes (defaults to full)

        Returns:
            The stored Acknowledgement, including its summary snapshot

        Raises:
            ValidationError: missing ids or unknown acknowledgement type
            NotFoundError: case does not exist for this vendor
            ConflictError: case already signed off
            PreconditionError: full sign-off with open items
        """
        if not case_id or not vendor_id or not user_id:
            raise ValidationError("sign_off requires case_id, vendor_id and user_id")
        data = data or AcknowledgementData()
        ack_type = parse_enum(AcknowledgementType, data.acknowledgement_type, "acknowledgement_type")

        case = await self.case_store.get_case(case_id)
        if case is None or case.vendor_id != vendor_id:
            raise NotFoundError(f"Case {case_id} not found for vendor {vendor_id}")
        if await self.repository.get_acknowledgement(case_id) is not None:
            raise ConflictError(f"Case {case_id} has already been signed off")

        lines = await self.repository.list_lines(case_id)
        matches = await self.repository.list_matches(case_id)
        discrepancies = await self.repository.list_discrepancies(case_id)
        summary = summarize(lines, matches, discrepancies)

        if ack_type == AcknowledgementType.FULL:
            if summary.has_open_items:
                raise PreconditionError(
                    f"Full sign-off blocked for case {case_id}: "
                    + "; ".join(describe_open_items(summary, include_unmatched=False, discrepancies=discrepancies))
                )
            notes = data.notes
        else:
            notes = data.notes or ""
            open_items = describe_open_items(summary, discrepancies=discrepancies)
            if open_items:
                notes = (notes + "\n" if notes else "") + "Open items at sign-off:\n" + "\n".join(
                    f"- {item}" for item in open_items
                )

        try:
            ack = await self.repository.add_acknowledgement(Acknowledgement(
                case_id=case_id,
                vendor_id=vendor_id,
                acknowledged_by=user_id,
                acknowledged_at=datetime.now(timezone.utc),
                acknowledgement_type=ack_type,
                notes=notes,
                summary=summary,
            ))
            await self.case_store.set_case_status(case_id, CaseStatus.CLOSED)
            await self.repository.commit()
        except IntegrityError as e:
            await self.repository.rollback()
            raise ConflictError(f"Case {case_id} has already been signed off") from e
        except Exception:
            await self.repository.rollback()
            raise

        details = {
            "acknowledgement_type": ack_type.value,
            "summary": summary.to_dict(),
        }
        logger.info(
            f"Case {case_id} signed off ({ack_type.value}) by {user_id}",
            extra={"case_id": case_id, "vendor_id": vendor_id, "acknowledgement_id": ack.id},
        )
        append_audit(self.audit_log, AuditLogEntry.build(
            AuditAction.CASE_SIGN_OFF, ResourceType.ACKNOWLEDGEMENT,
            resource_id=ack.id, case_id=case_id, user_id=user_id, details=details
        ))
        dispatch_notification(self.notifier, case_id, CASE_SIGNED_OFF, {
            "acknowledgement_id": ack.id,
            "vendor_id": vendor_id,
            **details,
        })
        return ack
