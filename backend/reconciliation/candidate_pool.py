"""
Candidate Pool

Arena of ledger entries still claimable within one pipeline run. The pool
shrinks monotonically: once a claim is persisted the entry never comes back
for the rest of the run. A claim whose match could not be saved is
released. Reads are lock-free snapshots; claims are serialized.
"""

import asyncio
import logging
from typing import Dict, Iterable, List

from reconciliation.errors import LedgerEntryAlreadyClaimedError
from reconciliation.models import LedgerEntry

logger = logging.getLogger(__name__)


class CandidatePool:
    """
    Consumable set of ledger-entry candidates for one pipeline run.
    """

    def __init__(self, entries: Iterable[LedgerEntry]):
        self._entries: Dict[str, LedgerEntry] = {}
        for entry in entries:
            self._entries[entry.id] = entry
        self._claimed: Dict[str, str] = {}  # ledger_entry_id -> transaction_id
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ledger_entry_id: str) -> bool:
        return ledger_entry_id in self._entries

    @property
    def claimed(self) -> Dict[str, str]:
        return dict(self._claimed)

    def available(self) -> List[LedgerEntry]:
        """Snapshot of unclaimed entries in stable (date, id) order."""
        return sorted(self._entries.values(), key=lambda e: (e.entry_date, e.id))

    async def claim(self, ledger_entry_id: str, transaction_id: str) -> LedgerEntry:
        """
        Remove an entry from the pool on behalf of a transaction.

        Raises:
            LedgerEntryAlreadyClaimedError: entry is not (or no longer) in the pool
        """
        async with self._lock:
            entry = self._entries.pop(ledger_entry_id, None)
            if entry is None:
                holder = self._claimed.get(ledger_entry_id)
                raise LedgerEntryAlreadyClaimedError(
                    f"Ledger entry {ledger_entry_id} is not available in the candidate pool",
                    details={
                        "ledger_entry_id": ledger_entry_id,
                        "transaction_id": transaction_id,
                        "claimed_by": holder,
                    }
                )
            self._claimed[ledger_entry_id] = transaction_id

        logger.debug(
            f"Claimed ledger entry {ledger_entry_id} for transaction {transaction_id} "
            f"({len(self._entries)} remaining)"
        )
        return entry

    async def discard(self, ledger_entry_id: str) -> None:
        """Drop an entry found to be claimed outside this run."""
        async with self._lock:
            self._entries.pop(ledger_entry_id, None)

    async def release(self, entry: LedgerEntry) -> None:
        """Return an entry whose match was never persisted."""
        async with self._lock:
            self._claimed.pop(entry.id, None)
            self._entries[entry.id] = entry
        logger.debug(f"Released ledger entry {entry.id} back to the candidate pool")
