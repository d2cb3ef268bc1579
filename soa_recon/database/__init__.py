from .connection import (
    get_db, get_engine, get_session_factory, configure_engine, dispose_engine, init_db, Base
)

# Import SOA models to ensure they are registered with Base
from .soa_models import (
    SOACaseDB, SOALineDB, LedgerRecordDB, SOAMatchDB,
    SOADiscrepancyDB, SOAAcknowledgementDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'configure_engine', 'dispose_engine',
    'init_db', 'Base',
    # SOA models
    'SOACaseDB', 'SOALineDB', 'LedgerRecordDB', 'SOAMatchDB',
    'SOADiscrepancyDB', 'SOAAcknowledgementDB',
]
