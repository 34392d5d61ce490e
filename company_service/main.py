"""
Company Service
HTTP surface over the account hierarchy and coin ledger
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import jwt
from fastapi import Depends, FastAPI, Header, Query, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from common.error_handling import ErrorCodes, PermissionDenied, Unauthorized, add_error_handlers
from common.redis_client import redis_cache
from common.security import mint_user_jwt, verify_token
from common.settings import settings
from company_service import accounts, analytics, hierarchy, roles, wallet
from company_service.db import engine, get_db
from company_service.models import Base, LedgerType, Role
from company_service.schemas import (
    AccountOut, AccountPage, AssignCoinsRequest, BalanceOut, ChangePasswordRequest, CreateAccountRequest,
    DownlineOverview, DownlinePage, LoadCoinsRequest, LoadResult, LoginRequest, MeOut, MembershipOut, MessageOut,
    ReconcileOut, RoleCheckOut, StatusRequest, TokenResponse, TransactionPage, TransferResult, TreeNode,
    UpdateAccountRequest, UpdateProfileRequest, WalletSummary,
)

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Company Service", version="1.0.0")
add_error_handlers(app)
Base.metadata.create_all(bind=engine)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

def current_actor(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the bearer token to the acting account id"""
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        claims = verify_token(token)
    except jwt.PyJWTError as e:
        raise Unauthorized(f"Invalid token: {e}", code=ErrorCodes.INVALID_TOKEN)
    return claims["sub"]

def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    return page, limit

def _require_visible(db: Session, actor_id: str, target_id: str) -> None:
    actor = hierarchy.require_actor(db, actor_id)
    if actor.role != Role.ADMIN and not hierarchy.is_descendant(db, actor.id, target_id):
        raise PermissionDenied("Access denied: user is not in your downline")

# --- auth -------------------------------------------------------------------

@app.post("/auth/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    company = accounts.authenticate(db, req.username, req.password)
    token = mint_user_jwt(sub=company.id, claims={"role": company.role.value, "username": company.username})
    logger.info(f"Login: {company.username}")
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": settings.jwt_ttl_seconds,
        "account": accounts.account_to_dict(company),
    }

# --- companies --------------------------------------------------------------

@app.post("/companies", response_model=AccountOut, status_code=201)
def create_company(req: CreateAccountRequest, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    return accounts.create_account(db, actor_id, req.model_dump())

@app.get("/companies/me", response_model=MeOut)
def get_me(actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    return accounts.get_me(db, actor_id)

@app.patch("/companies/me", response_model=AccountOut)
def update_me(req: UpdateProfileRequest, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    return accounts.update_profile(db, actor_id, req.model_dump(exclude_unset=True))

@app.post("/companies/me/password", response_model=MessageOut)
def change_password(req: ChangePasswordRequest, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    accounts.change_password(db, actor_id, req.old_password, req.new_password)
    return {"message": "Password updated successfully"}

@app.get("/companies/my-users", response_model=AccountPage)
def my_users(paging=Depends(page_params), actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    page, limit = paging
    return accounts.list_my_users(db, actor_id, page, limit)

@app.get("/companies/by-parent/{parent_id}", response_model=AccountPage)
def users_by_parent(
    parent_id: str,
    paging=Depends(page_params),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    page, limit = paging
    return accounts.list_users_by_parent(db, actor_id, parent_id, page, limit)

@app.get("/companies/downline", response_model=DownlinePage)
def downline(
    paging=Depends(page_params),
    q: str = "",
    status: Optional[str] = None,
    role: Optional[str] = None,
    sort: str = analytics.DEFAULT_SORT,
    order: str = "desc",
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    page, limit = paging
    return analytics.downline_page(db, actor_id, page, limit, q=q, status=status, role=role, sort=sort, order=order)

@app.get("/companies/tree", response_model=TreeNode)
def downline_tree(
    max_depth: Optional[int] = Query(None, ge=0),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    hierarchy.require_actor(db, actor_id)
    return analytics.downline_tree(db, actor_id, max_depth=max_depth)

@app.get("/companies/wallet-summary", response_model=WalletSummary)
def wallet_summary(
    low: Decimal = analytics.LOW_BALANCE,
    high: Decimal = analytics.HIGH_BALANCE,
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    hierarchy.require_actor(db, actor_id)
    return analytics.wallet_summary(db, actor_id, low=low, high=high)

@app.get("/companies/dashboard", response_model=DownlineOverview)
def dashboard(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    period: str = analytics.DEFAULT_PERIOD,
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """Ledger activity over the caller's downline for a date range"""
    return analytics.downline_overview(db, actor_id, start=start, end=end, period=period)

@app.get("/companies/{company_id}", response_model=AccountOut)
def get_company(company_id: str, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    return accounts.get_account(db, actor_id, company_id)

@app.patch("/companies/{company_id}", response_model=AccountOut)
def update_company(
    company_id: str,
    req: UpdateAccountRequest,
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return accounts.update_account(db, actor_id, company_id, req.model_dump(exclude_unset=True))

@app.post("/companies/{company_id}/status", response_model=AccountOut)
def set_status(
    company_id: str,
    req: StatusRequest,
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return accounts.toggle_status(db, actor_id, company_id, req.status)

@app.delete("/companies/{company_id}", response_model=AccountOut)
def delete_company(company_id: str, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    return accounts.soft_delete(db, actor_id, company_id)

# --- hierarchy & roles ------------------------------------------------------

@app.get("/hierarchy/{root_id}/contains/{target_id}", response_model=MembershipOut)
def contains(root_id: str, target_id: str, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    _require_visible(db, actor_id, root_id)
    return {"root_id": root_id, "target_id": target_id, "contains": hierarchy.is_descendant(db, root_id, target_id)}

@app.get("/roles/can-assign", response_model=RoleCheckOut)
def can_assign(from_role: Role, to_role: Role):
    return {
        "from_role": from_role,
        "to_role": to_role,
        "allowed": roles.can_assign(from_role, to_role),
        "reason": roles.assign_denial_reason(from_role, to_role),
    }

@app.get("/roles/can-create", response_model=RoleCheckOut)
def can_create(from_role: Role, to_role: Role):
    reason = roles.create_denial_reason(from_role, to_role)
    return {"from_role": from_role, "to_role": to_role, "allowed": reason is None, "reason": reason}

# --- coins ------------------------------------------------------------------

@app.post("/coins/load", response_model=LoadResult)
def load_coins(
    req: LoadCoinsRequest,
    idempotency_key: Optional[str] = Header(None, max_length=wallet.IDEMPOTENCY_KEY_MAX),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return wallet.load_self(db, actor_id, req.amount, idempotency_key=idempotency_key)

@app.post("/coins/assign", response_model=TransferResult)
def assign_coins(
    req: AssignCoinsRequest,
    idempotency_key: Optional[str] = Header(None, max_length=wallet.IDEMPOTENCY_KEY_MAX),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return wallet.transfer(db, actor_id, req.target_id, req.amount, idempotency_key=idempotency_key)

@app.get("/coins/my-transactions", response_model=TransactionPage)
def my_transactions(
    paging=Depends(page_params),
    entry_type: Optional[LedgerType] = Query(None, alias="type"),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    page, limit = paging
    actor = hierarchy.require_actor(db, actor_id)
    return wallet.list_transactions(db, actor, scope="self", page=page, limit=limit, entry_type=entry_type)

@app.get("/coins/transactions-hierarchy", response_model=TransactionPage)
def hierarchy_transactions(
    paging=Depends(page_params),
    entry_type: Optional[LedgerType] = Query(None, alias="type"),
    actor_id: str = Depends(current_actor),
    db: Session = Depends(get_db),
):
    page, limit = paging
    actor = hierarchy.require_actor(db, actor_id)
    return wallet.list_transactions(db, actor, scope="subtree", page=page, limit=limit, entry_type=entry_type)

@app.get("/coins/balance", response_model=BalanceOut)
def balance(actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    hierarchy.require_actor(db, actor_id)
    return {"company_id": actor_id, "balance": wallet.get_balance(db, actor_id)}

@app.get("/coins/reconcile/{company_id}", response_model=ReconcileOut)
def reconcile(company_id: str, actor_id: str = Depends(current_actor), db: Session = Depends(get_db)):
    _require_visible(db, actor_id, company_id)
    return wallet.reconcile(db, company_id)

# --- health -----------------------------------------------------------------

@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Health check"""
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unhealthy"
    cache = "disabled" if not redis_cache.enabled else ("healthy" if redis_cache.ping() else "unhealthy")
    return {
        "ok": database == "healthy",
        "status": "healthy" if database == "healthy" else "unhealthy",
        "service": "company_service",
        "database": database,
        "cache": cache,
    }
