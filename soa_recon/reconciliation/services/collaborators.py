"""
Collaborator contracts for the SOA engine.

The engine depends on three narrow interfaces:
- CaseStore: case identity and the open -> closed transition
- AuditLog: append-only sink for decision records
- NotificationDispatcher: told about discrepancies and sign-off, in a
  background task so delivery never holds up the operation

Default implementations are provided; hosts inject their own through the
service constructors. Audit and notification are side channels: their
failures are logged at WARNING and never undo the primary operation.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set, Union, runtime_checkable

from soa_recon.reconciliation.errors import NotFoundError
from soa_recon.reconciliation.models import CaseRecord
from soa_recon.reconciliation.registry import CaseStatus, parse_enum
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.services.audit import AuditLogEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class CaseStore(Protocol):
    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        ...

    async def set_case_status(self, case_id: str, status: Union[CaseStatus, str]) -> None:
        ...


@runtime_checkable
class AuditLog(Protocol):
    def append(self, event: AuditLogEntry) -> Any:
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    async def notify(self, case_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class SqlCaseStore:
    """
    Case store backed by the soa_cases table.

    Shares the repository's session, so a status change joins the
    caller's transaction.
    """

    def __init__(self, repository: SOARepository):
        self.repository = repository

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        return await self.repository.get_case(case_id)

    async def set_case_status(self, case_id: str, status: Union[CaseStatus, str]) -> None:
        status = parse_enum(CaseStatus, status, "case status")
        updated = await self.repository.set_case_status(case_id, status)
        if not updated:
            raise NotFoundError(f"Case {case_id} not found")


class LoggingNotificationDispatcher:
    """Notification dispatcher that only logs. Delivery is up to the host."""

    async def notify(self, case_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Notification: {event_type} for case {case_id}",
            extra={"case_id": case_id, "event_type": event_type, "payload": payload},
        )


def append_audit(audit_log: Optional[AuditLog], entry: AuditLogEntry) -> bool:
    """Append to the audit log; a failure is logged, not raised."""
    if audit_log is None:
        return False
    try:
        audit_log.append(entry)
        return True
    except Exception as e:
        logger.warning(
            f"Failed to store audit log for {entry.action}: {e}",
            extra={"case_id": entry.case_id, "resource_id": entry.resource_id},
        )
        return False


_pending_notifications: Set["asyncio.Task[None]"] = set()


async def _deliver(
    notifier: NotificationDispatcher,
    case_id: str,
    event_type: str,
    payload: Dict[str, Any]
) -> None:
    try:
        await notifier.notify(case_id, event_type, payload)
    except Exception as e:
        logger.warning(
            f"Failed to dispatch {event_type} notification: {e}",
            extra={"case_id": case_id},
        )


def dispatch_notification(
    notifier: Optional[NotificationDispatcher],
    case_id: str,
    event_type: str,
    payload: Dict[str, Any]
) -> Optional["asyncio.Task[None]"]:
    """
    Schedule a notification on the running loop and return its task.

    The caller does not wait for delivery. Pending tasks are held here
    until they finish; a delivery failure is logged, not raised.
    """
    if notifier is None:
        return None
    task = asyncio.create_task(_deliver(notifier, case_id, event_type, payload))
    _pending_notifications.add(task)
    task.add_done_callback(_pending_notifications.discard)
    return task


async def drain_notifications() -> None:
    """Wait for the notifications scheduled on this loop to finish (shutdown, tests)."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [task for task in _pending_notifications if task.get_loop() is loop]
        if not pending:
            return
        await asyncio.gather(*pending)
