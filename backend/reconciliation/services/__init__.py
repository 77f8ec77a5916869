"""
Reconciliation Services
"""

from .resolution_service import ResolutionService
from .session_manager import SessionManager

__all__ = ["ResolutionService", "SessionManager"]
