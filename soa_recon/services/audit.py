"""
Audit Logging for SOA Reconciliation

Append-only record of every state-changing reconciliation decision:
- Matches (created, confirmed, rejected)
- Discrepancies (created, updated, resolved)
- Case sign-off

Storage: JSON Lines file, one entry per line, guarded by a thread lock.
"""

import json
import uuid
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class AuditAction(str, Enum):
    """Auditable reconciliation actions"""

    MATCH_CREATE = "soa.match_create"
    MATCH_CONFIRM = "soa.match_confirm"
    MATCH_REJECT = "soa.match_reject"

    DISCREPANCY_CREATE = "soa.discrepancy_create"
    DISCREPANCY_UPDATE = "soa.discrepancy_update"
    DISCREPANCY_RESOLVE = "soa.discrepancy_resolve"

    MATCH_RUN = "soa.match_run"
    CASE_SIGN_OFF = "soa.case_sign_off"


class ResourceType(str, Enum):
    """Resource types for audit logging"""
    MATCH = "soa_match"
    DISCREPANCY = "soa_discrepancy"
    ACKNOWLEDGEMENT = "soa_acknowledgement"
    CASE = "soa_case"


# ==================== MODELS ====================

class AuditLogEntry(BaseModel):
    """Audit log entry model"""
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    case_id: Optional[str] = None
    user_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        action: Union[AuditAction, str],
        resource_type: Union[ResourceType, str],
        resource_id: Optional[str] = None,
        case_id: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AuditLogEntry":
        return cls(
            action=action.value if isinstance(action, AuditAction) else action,
            resource_type=resource_type.value if isinstance(resource_type, ResourceType) else resource_type,
            resource_id=str(resource_id) if resource_id else None,
            case_id=case_id,
            user_id=user_id,
            details=details or {},
        )


# ==================== AUDIT LOG ====================

class JsonlAuditLog:
    """
    Append-only JSON Lines audit sink.

    Usage:
        audit = JsonlAuditLog("logs/soa_audit.jsonl")
        audit.append(AuditLogEntry.build(
            AuditAction.MATCH_CONFIRM, ResourceType.MATCH,
            resource_id=match.id, case_id=match.case_id, user_id=user_id
        ))

    Write failures propagate to the caller; the reconciliation service
    logs them as warnings without failing the primary operation.
    """

    def __init__(self, path: Union[str, Path]):
        self.log_file = Path(path)
        self._lock = threading.Lock()

    def _ensure_file_exists(self):
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_file.exists():
            self.log_file.touch()

    def append(self, event: AuditLogEntry) -> AuditLogEntry:
        """Write an entry to the log file (thread-safe)"""
        with self._lock:
            self._ensure_file_exists()
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.model_dump(), default=str) + "\n")

        logger.info(
            f"AUDIT: {event.action} on {event.resource_type}"
            f"{f'/{event.resource_id}' if event.resource_id else ''}"
            f" by {event.user_id or 'system'}"
        )
        return event

    def get_logs(
        self,
        case_id: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """
        Read entries back, newest first.

        Args:
            case_id: Only entries for this case
            action: Only entries with this action
            limit: Maximum entries returned
        """
        if not self.log_file.exists():
            return []

        action_str = action.value if isinstance(action, AuditAction) else action
        entries = []
        with self._lock:
            with open(self.log_file, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = AuditLogEntry(**json.loads(line))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning(f"Skipping malformed audit line: {e}")
                        continue
                    if case_id and entry.case_id != case_id:
                        continue
                    if action_str and entry.action != action_str:
                        continue
                    entries.append(entry)

        entries.reverse()
        return entries[:limit]
