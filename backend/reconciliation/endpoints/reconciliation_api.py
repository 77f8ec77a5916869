"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- GET /api/reconciliation/status - Module status
- POST /api/reconciliation/sessions - Start a session
- GET /api/reconciliation/sessions - List sessions
- GET /api/reconciliation/sessions/{session_id} - Get a session
- GET /api/reconciliation/sessions/{session_id}/statistics - Session statistics
- POST /api/reconciliation/sessions/{session_id}/run - Run the matching pipeline
- POST /api/reconciliation/sessions/{session_id}/complete - Complete a session
- POST /api/reconciliation/sessions/{session_id}/cancel - Cancel a session
- GET /api/reconciliation/sessions/{session_id}/matches - Matches of a session
- GET /api/reconciliation/sessions/{session_id}/exceptions - Exceptions of a session
- POST /api/reconciliation/matches/confirm - Confirm a match / manual match
- POST /api/reconciliation/matches/{match_id}/reject - Reject a match
- POST /api/reconciliation/transactions/{transaction_id}/exclude - Exclude a transaction
- POST /api/reconciliation/exceptions/{exception_id}/resolve - Resolve an exception
- GET /api/reconciliation/rules - List matching rules
- POST /api/reconciliation/rules - Create a matching rule

Services are built once at startup and stored on app.state.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from pydantic import BaseModel, Field

from config import get_settings
from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import (
    ExceptionResolution,
    MatchStatus,
    RuleField,
    RuleOperator,
)
from reconciliation.errors import ReconciliationError
from reconciliation.matching_rules import validate_rule
from reconciliation.models import MatchingRule, RuleAction, RuleCondition
from reconciliation.repositories.base import ReconciliationRepository, RuleRepository
from reconciliation.services.resolution_service import ResolutionService
from reconciliation.services.session_manager import SessionManager
from utils.validation_errors import raise_reconciliation_error, validate_required_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request Models ====================

class ConfigOverrides(BaseModel):
    """Per-session overrides of the default matching configuration."""
    amount_tolerance: Optional[Decimal] = Field(default=None, ge=0)
    date_tolerance_days: Optional[int] = Field(default=None, ge=0)
    fuzzy_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    auto_confirm_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    semantic_enabled: Optional[bool] = None
    semantic_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    semantic_max_candidates: Optional[int] = Field(default=None, ge=1)


class StartSessionRequest(BaseModel):
    """Request to open a reconciliation session."""
    account_id: str = Field(..., description="Bank account ID")
    period_start: date = Field(..., description="First booking date in scope")
    period_end: date = Field(..., description="Last booking date in scope")
    config: Optional[ConfigOverrides] = Field(default=None, description="Matching configuration overrides")


class ConfirmMatchRequest(BaseModel):
    """Request to confirm a transaction against a ledger entry."""
    transaction_id: str
    ledger_entry_id: str
    session_id: Optional[str] = None


class RejectMatchRequest(BaseModel):
    """Request to reject a match."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


class ExcludeTransactionRequest(BaseModel):
    """Request to exclude a transaction from reconciliation."""
    reason: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class ResolveExceptionRequest(BaseModel):
    """Request to resolve an exception."""
    resolution: ExceptionResolution
    ledger_entry_id: Optional[str] = None
    note: Optional[str] = None


class RuleConditionModel(BaseModel):
    field: RuleField
    operator: RuleOperator
    value: Any
    case_sensitive: bool = False


class RuleActionModel(BaseModel):
    account_code: str = Field(..., min_length=1)
    auto_confirm: bool = False


class CreateRuleRequest(BaseModel):
    """Request to create a matching rule."""
    name: str = Field(..., min_length=1)
    priority: int = Field(default=100, description="Lower runs first")
    conditions: List[RuleConditionModel]
    action: RuleActionModel
    enabled: bool = True
    account_id: Optional[str] = Field(default=None, description="Scope; omit for every account")


# ==================== Authentication ====================

def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    valid_keys = get_settings().internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


# ==================== Dependencies ====================

def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Reconciliation services not initialised")
    return service


def get_session_manager(request: Request) -> SessionManager:
    return _service(request, "session_manager")


def get_resolution_service(request: Request) -> ResolutionService:
    return _service(request, "resolution_service")


def get_repository(request: Request) -> ReconciliationRepository:
    return _service(request, "reconciliation_repository")


def get_rule_repository(request: Request) -> RuleRepository:
    return _service(request, "rule_repository")


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status and default matching configuration.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "rule_matching": True,
            "exact_matching": True,
            "fuzzy_matching": True,
            "semantic_matching": settings.RECON_SEMANTIC_ENABLED,
        },
        "default_config": ReconciliationConfig.from_settings(settings).to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/sessions", status_code=201, summary="Start session")
async def start_session(
    request: StartSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Open a reconciliation session for a bank account and period.

    Requires internal API key authentication.
    """
    try:
        config = None
        if request.config is not None:
            config = manager.default_config.with_overrides(**request.config.model_dump())

        session = await manager.start_session(
            account_id=request.account_id,
            period_start=request.period_start,
            period_end=request.period_end,
            config=config,
            actor=x_user_id,
        )
        return {"success": True, "session": session.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions", summary="List sessions")
async def list_sessions(
    account_id: Optional[str] = Query(default=None, description="Filter by bank account"),
    manager: SessionManager = Depends(get_session_manager),
    _auth: bool = Depends(verify_internal_auth)
):
    sessions = await manager.list_sessions(account_id)
    return {
        "sessions": [s.to_dict() for s in sessions],
        "count": len(sessions)
    }


@router.get("/sessions/{session_id}", summary="Get session")
async def get_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        session = await manager.get_session(validated_session_id)
        data = session.to_dict()
        data["running"] = manager.is_running(validated_session_id)
        return data

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/statistics", summary="Get session statistics")
async def get_session_statistics(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        statistics = await manager.get_statistics(validated_session_id)
        return {"session_id": validated_session_id, "statistics": statistics.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/run", summary="Run matching pipeline")
async def run_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Run the matching pipeline for an in-progress session.

    Reruns only process transactions that are not yet placed.
    A candidate store outage moves the session to FAILED (503).

    Requires internal API key authentication.
    """
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        result = await manager.run_pipeline(validated_session_id)
        return {"success": True, "result": result.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/complete", summary="Complete session")
async def complete_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        session = await manager.complete_session(validated_session_id, actor=x_user_id)
        return {"success": True, "message": "Session completed", "session": session.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/cancel", summary="Cancel session")
async def cancel_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Cancel a session. A running pipeline stops before its next transaction;
    matches already created are kept.
    """
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        session = await manager.cancel_session(validated_session_id, actor=x_user_id)
        return {"success": True, "message": "Session cancellation accepted", "session": session.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/matches", summary="Get session matches")
async def get_session_matches(
    session_id: str,
    status: Optional[MatchStatus] = Query(default=None, description="Filter by status"),
    manager: SessionManager = Depends(get_session_manager),
    repository: ReconciliationRepository = Depends(get_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        await manager.get_session(validated_session_id)
        matches = await repository.list_matches(validated_session_id, status)
        return {
            "session_id": validated_session_id,
            "matches": [m.to_dict() for m in matches],
            "count": len(matches)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/exceptions", summary="Get session exceptions")
async def get_session_exceptions(
    session_id: str,
    unresolved_only: bool = Query(default=False),
    manager: SessionManager = Depends(get_session_manager),
    repository: ReconciliationRepository = Depends(get_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_session_id = validate_required_uuid(session_id, "session_id")

    try:
        await manager.get_session(validated_session_id)
        exceptions = await repository.list_exceptions(validated_session_id, unresolved_only)
        return {
            "session_id": validated_session_id,
            "exceptions": [e.to_dict() for e in exceptions],
            "count": len(exceptions)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/matches/confirm", summary="Confirm match")
async def confirm_match(
    request: ConfirmMatchRequest,
    service: ResolutionService = Depends(get_resolution_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Confirm a transaction against a ledger entry.

    Confirms the pending match when it points at the same entry; otherwise
    records a manual match.

    Requires internal API key authentication.
    """
    try:
        match = await service.confirm_match(
            transaction_id=request.transaction_id,
            ledger_entry_id=request.ledger_entry_id,
            actor=x_user_id,
            session_id=request.session_id,
        )
        return {"success": True, "message": "Match confirmed", "match": match.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/matches/{match_id}/reject", summary="Reject match")
async def reject_match(
    match_id: str,
    request: RejectMatchRequest,
    service: ResolutionService = Depends(get_resolution_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reject a pending or confirmed match and release its ledger entry.

    Requires internal API key authentication.
    """
    validated_match_id = validate_required_uuid(match_id, "match_id")

    try:
        match = await service.reject_match(validated_match_id, actor=x_user_id, reason=request.reason)
        return {"success": True, "message": "Match rejected", "match": match.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/transactions/{transaction_id}/exclude", summary="Exclude transaction")
async def exclude_transaction(
    transaction_id: str,
    request: ExcludeTransactionRequest,
    service: ResolutionService = Depends(get_resolution_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    try:
        match = await service.exclude_transaction(
            transaction_id,
            request.reason,
            actor=x_user_id,
            session_id=request.session_id,
        )
        return {"success": True, "message": "Transaction excluded", "match": match.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/exceptions/{exception_id}/resolve", summary="Resolve exception")
async def resolve_exception(
    exception_id: str,
    request: ResolveExceptionRequest,
    service: ResolutionService = Depends(get_resolution_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Resolve an exception as MATCHED (needs ledger_entry_id), EXCLUDED,
    CREATED_ENTRY or IGNORED.

    Requires internal API key authentication.
    """
    validated_exception_id = validate_required_uuid(exception_id, "exception_id")

    try:
        exception = await service.resolve_exception(
            validated_exception_id,
            request.resolution,
            actor=x_user_id,
            ledger_entry_id=request.ledger_entry_id,
            note=request.note,
        )
        return {"success": True, "message": "Exception resolved", "exception": exception.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/rules", summary="List matching rules")
async def list_rules(
    account_id: Optional[str] = Query(default=None, description="Rules in scope for this account"),
    rule_repository: RuleRepository = Depends(get_rule_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    rules = await rule_repository.list_rules(account_id)
    return {
        "rules": [r.to_dict() for r in rules],
        "count": len(rules)
    }


@router.post("/rules", status_code=201, summary="Create matching rule")
async def create_rule(
    request: CreateRuleRequest,
    rule_repository: RuleRepository = Depends(get_rule_repository),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Create a matching rule. Conditions are validated before the rule is stored.

    Requires internal API key authentication.
    """
    rule = MatchingRule(
        name=request.name,
        priority=request.priority,
        conditions=[
            RuleCondition(
                field=c.field,
                operator=c.operator,
                value=c.value,
                case_sensitive=c.case_sensitive,
            )
            for c in request.conditions
        ],
        action=RuleAction(
            account_code=request.action.account_code,
            auto_confirm=request.action.auto_confirm,
        ),
        enabled=request.enabled,
        account_id=request.account_id,
    )

    try:
        validate_rule(rule)
        saved = await rule_repository.save_rule(rule)
        logger.info(f"Matching rule {saved.id} '{saved.name}' created by {x_user_id}")
        return {"success": True, "rule": saved.to_dict()}

    except ReconciliationError as e:
        raise_reconciliation_error(e)
