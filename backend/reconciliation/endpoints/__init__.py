"""
Reconciliation API Endpoints
"""

from .reconciliation_api import router

__all__ = ["router"]
