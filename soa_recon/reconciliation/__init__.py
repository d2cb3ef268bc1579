"""
SOA Reconciliation Module

Provides statement-of-account reconciliation:
- Deterministic and fuzzy matching of SOA lines to ledger records
- Pending -> confirmed / rejected match lifecycle
- Discrepancy detection (amount mismatch, missing invoice, duplicate claim)
- Case summaries and sign-off
- Audit trail for all decisions
"""

from soa_recon.reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    PreconditionError,
    NoCandidateError,
)
from soa_recon.reconciliation.registry import (
    LineStatus,
    MatchType,
    MatchStatus,
    DiscrepancyType,
    Severity,
    DiscrepancyStatus,
    AcknowledgementType,
    CaseStatus,
    MatchingConfig,
    DetectionConfig,
)
from soa_recon.reconciliation.matching_rules.soa_rules import SOAMatchingRules
from soa_recon.reconciliation.services.discrepancy_detector import DiscrepancyDetector
from soa_recon.reconciliation.services.reconciliation_service import SOAReconciliationService
from soa_recon.reconciliation.services.signoff_service import SignOffCoordinator
from soa_recon.reconciliation.endpoints.reconciliation_api import router as soa_router

__all__ = [
    # Errors
    'ReconciliationError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'InvalidStateError',
    'PreconditionError',
    'NoCandidateError',
    # Registry
    'LineStatus',
    'MatchType',
    'MatchStatus',
    'DiscrepancyType',
    'Severity',
    'DiscrepancyStatus',
    'AcknowledgementType',
    'CaseStatus',
    'MatchingConfig',
    'DetectionConfig',
    # Matching Rules
    'SOAMatchingRules',
    # Services
    'DiscrepancyDetector',
    'SOAReconciliationService',
    'SignOffCoordinator',
    # Router
    'soa_router',
]
