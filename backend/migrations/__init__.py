"""
Database migrations for the reconciliation tables
"""
