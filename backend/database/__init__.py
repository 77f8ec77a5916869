from .connection import (
    get_engine, get_session_factory, create_engine_for_url,
    create_session_factory, init_db, dispose_engine, Base
)

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankTransactionDB, LedgerEntryDB, AccountMappingDB, MatchingRuleDB,
    ReconciliationSessionDB, MatchDB, ExceptionDB, RunLockDB,
    ReconciliationAuditLogDB
)

__all__ = [
    'get_engine', 'get_session_factory', 'create_engine_for_url',
    'create_session_factory', 'init_db', 'dispose_engine', 'Base',
    # Reconciliation models
    'BankTransactionDB', 'LedgerEntryDB', 'AccountMappingDB', 'MatchingRuleDB',
    'ReconciliationSessionDB', 'MatchDB', 'ExceptionDB', 'RunLockDB',
    'ReconciliationAuditLogDB',
]
