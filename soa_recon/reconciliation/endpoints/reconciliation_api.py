"""
SOA Reconciliation API Endpoints

REST API for the SOA reconciliation engine:
- GET  /api/soa/status - Module status and active thresholds
- GET  /api/soa/statements/{vendor_id} - Vendor cases with summaries
- GET  /api/soa/cases/{case_id}/lines - Statement lines
- GET  /api/soa/cases/{case_id}/summary - Case summary
- POST /api/soa/cases/{case_id}/match-run - Batch matching run
- GET  /api/soa/cases/{case_id}/matches - Matches for a case
- POST /api/soa/matches - Propose and create a match for one line
- GET  /api/soa/matches/{match_id} - Single match
- POST /api/soa/matches/{match_id}/confirm - Confirm a match
- POST /api/soa/matches/{match_id}/reject - Reject a match
- GET  /api/soa/cases/{case_id}/discrepancies - Discrepancies for a case
- POST /api/soa/cases/{case_id}/discrepancies - Raise a discrepancy
- POST /api/soa/discrepancies/{discrepancy_id}/resolve - Resolve a discrepancy
- POST /api/soa/cases/{case_id}/sign-off - Sign off and close a case

The acting user is read from the X-User-Id header.
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from soa_recon.config import get_settings
from soa_recon.database.connection import get_db
from soa_recon.reconciliation.errors import (
    ConflictError,
    InvalidStateError,
    NoCandidateError,
    NotFoundError,
    PreconditionError,
    ReconciliationError,
    ValidationError,
)
from soa_recon.reconciliation.matching_rules.soa_rules import SOAMatchingRules
from soa_recon.reconciliation.models import (
    AcknowledgementData,
    DiscrepancyData,
    MatchCriteria,
    MatchData,
    ResolutionData,
)
from soa_recon.reconciliation.registry import DetectionConfig, MatchingConfig
from soa_recon.reconciliation.services.collaborators import (
    AuditLog,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from soa_recon.reconciliation.services.discrepancy_detector import DiscrepancyDetector
from soa_recon.reconciliation.services.reconciliation_service import SOAReconciliationService
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.reconciliation.services.signoff_service import SignOffCoordinator
from soa_recon.services.audit import JsonlAuditLog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/soa", tags=["SOA Reconciliation"])


# Most specific first; ConflictError and InvalidStateError both map to 409.
ERROR_STATUS_CODES = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (PreconditionError, 412),
    (NoCandidateError, 422),
]


def engine_error_to_http(error: ReconciliationError) -> HTTPException:
    """Translate an engine error into an HTTPException."""
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return HTTPException(
                status_code=status_code,
                detail={"error": type(error).__name__, "message": str(error)}
            )
    return HTTPException(status_code=400, detail={"error": type(error).__name__, "message": str(error)})


# ==================== Request Models ====================

class MatchRunRequest(BaseModel):
    """Request to run batch matching over a case."""
    vendor_id: str = Field(..., description="Vendor owning the case")
    auto_confirm: Optional[bool] = Field(default=None, description="Confirm deterministic proposals")


class CreateMatchRequest(BaseModel):
    """
    Request to create a match for one SOA line.

    Without invoice_id the matcher picks the candidate. Without
    match_type the chosen pair is scored by the matcher.
    """
    soa_item_id: str = Field(..., description="SOA line ID")
    invoice_id: Optional[str] = Field(default=None, description="Ledger record ID")
    match_type: Optional[str] = Field(default=None, description="deterministic | fuzzy")
    is_exact_match: bool = Field(default=False)
    confidence: float = Field(default=0.0)
    match_score: int = Field(default=0)
    match_criteria: Optional[Dict[str, Any]] = Field(default=None)
    matched_by: str = Field(default="manual", description="system | manual")


class RejectMatchRequest(BaseModel):
    """Request to reject a match."""
    reason: Optional[str] = Field(default=None, description="Rejection reason (required)")


class CreateDiscrepancyRequest(BaseModel):
    """Request to raise a discrepancy by hand."""
    discrepancy_type: str = Field(..., description="amount_mismatch | missing_invoice | duplicate_claim | ...")
    severity: str = Field(default="medium", description="low | medium | high")
    description: str = Field(default="")
    amount_delta: Optional[Decimal] = Field(default=None)
    soa_item_id: Optional[str] = Field(default=None)
    match_id: Optional[str] = Field(default=None)
    invoice_id: Optional[str] = Field(default=None)
    related_soa_item_ids: List[str] = Field(default_factory=list)


class ResolveDiscrepancyRequest(BaseModel):
    """Request to resolve a discrepancy."""
    action: str = Field(default="corrected", description="corrected | waived | escalated | ignored")
    notes: Optional[str] = Field(default=None)


class SignOffRequest(BaseModel):
    """Request to sign off a case."""
    vendor_id: str = Field(..., description="Vendor owning the case")
    acknowledgement_type: str = Field(default="full", description="full | partial | with_exceptions")
    notes: Optional[str] = Field(default=None)


# ==================== Dependencies ====================

def get_matching_config() -> MatchingConfig:
    return MatchingConfig.from_settings(get_settings())


def get_detection_config() -> DetectionConfig:
    return DetectionConfig.from_settings(get_settings())


@lru_cache()
def get_audit_log() -> AuditLog:
    return JsonlAuditLog(get_settings().AUDIT_LOG_PATH)


def get_notifier() -> NotificationDispatcher:
    return LoggingNotificationDispatcher()


def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    matching_config: MatchingConfig = Depends(get_matching_config),
    detection_config: DetectionConfig = Depends(get_detection_config),
    audit_log: AuditLog = Depends(get_audit_log),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> SOAReconciliationService:
    return SOAReconciliationService(
        SOARepository(db),
        matcher=SOAMatchingRules(matching_config),
        detector=DiscrepancyDetector(detection_config),
        audit_log=audit_log,
        notifier=notifier,
    )


def get_signoff_coordinator(
    db: AsyncSession = Depends(get_db),
    audit_log: AuditLog = Depends(get_audit_log),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> SignOffCoordinator:
    return SignOffCoordinator(SOARepository(db), audit_log=audit_log, notifier=notifier)


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status(
    matching_config: MatchingConfig = Depends(get_matching_config),
    detection_config: DetectionConfig = Depends(get_detection_config),
):
    """
    Get SOA reconciliation module status.

    Returns the thresholds currently in force.
    """
    return {
        "module": "soa_reconciliation",
        "status": "operational",
        "version": get_settings().API_VERSION,
        "matching": matching_config.to_dict(),
        "detection": detection_config.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/statements/{vendor_id}", summary="List vendor statements")
async def list_statements(
    vendor_id: str,
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        statements = await service.list_statements(vendor_id)
        return {
            "vendor_id": vendor_id,
            "statements": [s.to_dict() for s in statements],
            "count": len(statements)
        }
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to list statements: {e}")
        raise HTTPException(status_code=500, detail="Failed to list statements")


@router.get("/cases/{case_id}/lines", summary="List statement lines")
async def list_lines(
    case_id: str,
    vendor_id: str = Query(..., description="Vendor owning the case"),
    status: Optional[str] = Query(default=None, description="extracted | matched | disputed"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        lines = await service.list_lines(case_id, vendor_id, status)
        return {
            "case_id": case_id,
            "lines": [line.to_dict() for line in lines],
            "count": len(lines)
        }
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to list lines: {e}")
        raise HTTPException(status_code=500, detail="Failed to list lines")


@router.get("/cases/{case_id}/summary", summary="Case summary")
async def get_summary(
    case_id: str,
    vendor_id: str = Query(..., description="Vendor owning the case"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        summary = await service.get_summary(case_id, vendor_id)
        return {"case_id": case_id, "summary": summary.to_dict()}
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to compute summary: {e}")
        raise HTTPException(status_code=500, detail="Failed to compute summary")


@router.post("/cases/{case_id}/match-run", summary="Run batch matching")
async def run_matching(
    case_id: str,
    request: MatchRunRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    """
    Match every extracted line of a case against the vendor ledger.

    Proposals are stored as pending matches; detection runs afterwards.
    """
    try:
        result = await service.run_matching(
            case_id, request.vendor_id, auto_confirm=request.auto_confirm, user_id=x_user_id
        )
        return result.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Matching run failed: {e}")
        raise HTTPException(status_code=500, detail="Matching run failed")


@router.get("/cases/{case_id}/matches", summary="List matches")
async def list_matches(
    case_id: str,
    status: Optional[str] = Query(default=None, description="pending | confirmed | rejected"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        matches = await service.list_matches(case_id, status)
        return {
            "case_id": case_id,
            "matches": [m.to_dict() for m in matches],
            "count": len(matches)
        }
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to list matches: {e}")
        raise HTTPException(status_code=500, detail="Failed to list matches")


@router.post("/matches", summary="Create a match")
async def create_match(
    request: CreateMatchRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        data = None
        if request.match_type is not None:
            data = MatchData(
                match_type=request.match_type,
                is_exact_match=request.is_exact_match,
                confidence=request.confidence,
                match_score=request.match_score,
                match_criteria=MatchCriteria.from_dict(request.match_criteria),
                matched_by=request.matched_by,
            )

        match = await service.propose_and_create_match(
            request.soa_item_id, request.invoice_id, data, user_id=x_user_id
        )
        return {
            "created": match is not None,
            "match": match.to_dict() if match else None
        }
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to create match: {e}")
        raise HTTPException(status_code=500, detail="Failed to create match")


@router.get("/matches/{match_id}", summary="Get a match")
async def get_match(
    match_id: str,
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        match = await service.get_match(match_id)
        return match.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to get match: {e}")
        raise HTTPException(status_code=500, detail="Failed to get match")


@router.post("/matches/{match_id}/confirm", summary="Confirm a match")
async def confirm_match(
    match_id: str,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        match = await service.confirm_match(match_id, x_user_id)
        return match.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to confirm match: {e}")
        raise HTTPException(status_code=500, detail="Failed to confirm match")


@router.post("/matches/{match_id}/reject", summary="Reject a match")
async def reject_match(
    match_id: str,
    request: RejectMatchRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        match = await service.reject_match(match_id, x_user_id, request.reason)
        return match.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to reject match: {e}")
        raise HTTPException(status_code=500, detail="Failed to reject match")


@router.get("/cases/{case_id}/discrepancies", summary="List discrepancies")
async def list_discrepancies(
    case_id: str,
    status: Optional[str] = Query(default=None, description="open | resolved"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        discrepancies = await service.list_discrepancies(case_id, status)
        return {
            "case_id": case_id,
            "discrepancies": [d.to_dict() for d in discrepancies],
            "count": len(discrepancies)
        }
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to list discrepancies: {e}")
        raise HTTPException(status_code=500, detail="Failed to list discrepancies")


@router.post("/cases/{case_id}/discrepancies", summary="Raise a discrepancy")
async def create_discrepancy(
    case_id: str,
    request: CreateDiscrepancyRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        discrepancy = await service.create_discrepancy(
            case_id,
            DiscrepancyData(
                discrepancy_type=request.discrepancy_type,
                severity=request.severity,
                description=request.description,
                amount_delta=request.amount_delta,
                soa_item_id=request.soa_item_id,
                match_id=request.match_id,
                invoice_id=request.invoice_id,
                related_soa_item_ids=request.related_soa_item_ids,
                detected_by="manual",
            ),
            user_id=x_user_id,
        )
        return discrepancy.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to create discrepancy: {e}")
        raise HTTPException(status_code=500, detail="Failed to create discrepancy")


@router.post("/discrepancies/{discrepancy_id}/resolve", summary="Resolve a discrepancy")
async def resolve_discrepancy(
    discrepancy_id: str,
    request: ResolveDiscrepancyRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: SOAReconciliationService = Depends(get_reconciliation_service),
):
    try:
        discrepancy = await service.resolve_discrepancy(
            discrepancy_id, x_user_id, ResolutionData(notes=request.notes, action=request.action)
        )
        return discrepancy.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Failed to resolve discrepancy: {e}")
        raise HTTPException(status_code=500, detail="Failed to resolve discrepancy")


@router.post("/cases/{case_id}/sign-off", summary="Sign off a case")
async def sign_off(
    case_id: str,
    request: SignOffRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    coordinator: SignOffCoordinator = Depends(get_signoff_coordinator),
):
    """
    Record the acknowledgement and close the case.

    A full sign-off is refused (412) while discrepancies or pending
    matches remain.
    """
    try:
        ack = await coordinator.sign_off(
            case_id,
            request.vendor_id,
            x_user_id,
            AcknowledgementData(acknowledgement_type=request.acknowledgement_type, notes=request.notes),
        )
        return ack.to_dict()
    except ReconciliationError as e:
        raise engine_error_to_http(e)
    except Exception as e:
        logger.error(f"Sign-off failed: {e}")
        raise HTTPException(status_code=500, detail="Sign-off failed")
