"""
Database Migration: Create Reconciliation Tables

Creates the recon_* tables (sessions, transactions, ledger entries,
account mappings, rules, matches, exceptions, run locks, audit log)
and their indexes, including the partial unique indexes that enforce
one active match per (session, transaction) and one claiming match
per ledger entry.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from database.connection import Base, dispose_engine, get_engine
import database.reconciliation_models  # noqa: F401  (registers tables on Base.metadata)


def reconciliation_tables():
    return [t for t in Base.metadata.sorted_tables if t.name.startswith("recon_")]


async def create_tables(engine: AsyncEngine = None) -> list:
    """Create the reconciliation tables. Returns the names of tables created."""
    engine = engine or get_engine()
    tables = reconciliation_tables()
    print("Creating reconciliation tables...")

    async with engine.begin() as conn:
        existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        await conn.run_sync(Base.metadata.create_all, tables=tables, checkfirst=True)

    created = []
    for i, table in enumerate(tables):
        if table.name in existing:
            print(f"  ✓ Table {i+1}/{len(tables)} {table.name} (already exists)")
        else:
            print(f"  ✓ Table {i+1}/{len(tables)} {table.name} created")
            created.append(table.name)

    print("\n✅ Reconciliation tables created successfully!")
    return created


async def main():
    try:
        await create_tables()
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
