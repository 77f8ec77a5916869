"""
Shared fixtures for the reconciliation engine tests.

Run with: pytest backend/tests -v
"""

from datetime import date
from decimal import Decimal

import pytest

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.models import AccountMapping, BankTransaction, LedgerEntry
from reconciliation.repositories.memory import InMemoryReconciliationStore

ACCOUNT_ID = "bank-acc-001"
LEDGER_ACCOUNT_ID = "ledger-acc-001"
PERIOD_START = date(2024, 1, 1)
PERIOD_END = date(2024, 1, 31)


@pytest.fixture
def make_transaction():
    """Factory for bank transactions on the test account."""
    def _make(
        id: str,
        amount: str,
        booking_date: date = date(2024, 1, 15),
        description: str = "",
        reference: str = None,
        counterparty_name: str = None,
        account_id: str = ACCOUNT_ID,
    ) -> BankTransaction:
        return BankTransaction(
            id=id,
            account_id=account_id,
            booking_date=booking_date,
            amount=Decimal(amount),
            description=description,
            reference=reference,
            counterparty_name=counterparty_name,
        )
    return _make


@pytest.fixture
def make_entry():
    """Factory for ledger entries on the linked ledger account."""
    def _make(
        id: str,
        amount: str,
        entry_date: date = date(2024, 1, 15),
        description: str = "",
        reference: str = None,
        account_code: str = None,
        ledger_account_id: str = LEDGER_ACCOUNT_ID,
    ) -> LedgerEntry:
        return LedgerEntry(
            id=id,
            ledger_account_id=ledger_account_id,
            entry_date=entry_date,
            amount=Decimal(amount),
            description=description,
            reference=reference,
            account_code=account_code,
        )
    return _make


@pytest.fixture
def store():
    """In-memory store with the test bank account linked to its ledger account."""
    store = InMemoryReconciliationStore()
    store.link_account(AccountMapping(bank_account_id=ACCOUNT_ID, ledger_account_id=LEDGER_ACCOUNT_ID))
    return store


@pytest.fixture
def config():
    return ReconciliationConfig()
