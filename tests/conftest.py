"""
Shared fixtures for the SOA reconciliation tests.

Each test gets its own SQLite database file (aiosqlite driver) with the
SOA tables created from the ORM metadata.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from soa_recon.database import Base
from soa_recon.reconciliation.models import LedgerRecord, SOALine
from soa_recon.reconciliation.registry import DetectionConfig, MatchingConfig
from soa_recon.reconciliation.services.discrepancy_detector import DiscrepancyDetector
from soa_recon.reconciliation.services.reconciliation_service import (
    LineLockRegistry,
    SOAReconciliationService,
)
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.reconciliation.services.signoff_service import SignOffCoordinator
from soa_recon.reconciliation.matching_rules.soa_rules import SOAMatchingRules
from soa_recon.services.audit import JsonlAuditLog


VENDOR_ID = "vendor-acme"
OTHER_VENDOR_ID = "vendor-globex"
USER_ID = "reviewer-1"


def make_line(
    line_id: str,
    amount: str,
    invoice_number: Optional[str] = None,
    invoice_date: Optional[date] = None,
    case_id: str = "case-1",
    vendor_id: str = VENDOR_ID,
    currency: str = "USD",
    line_number: Optional[int] = None,
    allow_partial: bool = False,
) -> SOALine:
    return SOALine(
        id=line_id,
        case_id=case_id,
        vendor_id=vendor_id,
        amount=Decimal(amount),
        currency=currency,
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        line_number=line_number,
        allow_partial=allow_partial,
    )


def make_record(
    record_id: str,
    total_amount: str,
    invoice_number: Optional[str] = None,
    invoice_date: Optional[date] = None,
    vendor_id: str = VENDOR_ID,
    currency: str = "USD",
) -> LedgerRecord:
    return LedgerRecord(
        id=record_id,
        vendor_id=vendor_id,
        amount=Decimal(total_amount),
        currency=currency,
        total_amount=Decimal(total_amount),
        invoice_number=invoice_number,
        invoice_date=invoice_date,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database with the SOA schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'soa.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repo(session):
    return SOARepository(session)


@pytest.fixture
def audit_log(tmp_path):
    return JsonlAuditLog(tmp_path / "audit" / "soa_audit.jsonl")


@pytest.fixture
def matching_config():
    return MatchingConfig()


@pytest.fixture
def service(repo, audit_log, matching_config):
    """Reconciliation service with a private lock registry."""
    return SOAReconciliationService(
        repo,
        matcher=SOAMatchingRules(matching_config),
        detector=DiscrepancyDetector(DetectionConfig()),
        audit_log=audit_log,
        line_locks=LineLockRegistry(),
    )


@pytest.fixture
def coordinator(repo, audit_log):
    return SignOffCoordinator(repo, audit_log=audit_log)


async def seed_case(repo: SOARepository, case_id: str = "case-1", vendor_id: str = VENDOR_ID, lines=(), records=()):
    """Insert a case with its lines and ledger records, then commit."""
    await repo.add_case(vendor_id, case_id=case_id)
    for line in lines:
        await repo.add_line(line)
    for record in records:
        await repo.add_ledger_record(record)
    await repo.commit()
