"""
Account lifecycle: creation, manager-side updates, status changes, soft
delete, and the self-service profile/password paths.

Policy checks run before any write; every mutation is one unit of work via
``run_atomic`` and leaves an audit row behind.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import Conflict, NotFound, PermissionDenied, Unauthorized, ValidationFailed
from common.redis_client import redis_cache
from common.security import hash_password, verify_password
from company_service import hierarchy, roles
from company_service.audit import record_audit
from company_service.db import run_atomic
from company_service.models import Company, Role, Status, Wallet, ZERO
from company_service.serialization import jsonable, restore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# fields a manager may patch on a descendant
MANAGER_FIELDS = {"contact_number", "remarks", "recharge_perm", "withdraw_perm", "agent_protect", "email"}
# fields an account may patch on itself
PROFILE_FIELDS = {"email", "contact_number", "remarks"}
OPTIONAL_CREATE_FIELDS = MANAGER_FIELDS
# manager fields that grant rights; non-admins need the assign relation to set them
PERMISSION_FIELDS = {"recharge_perm", "withdraw_perm", "agent_protect"}

def account_to_dict(company: Company) -> Dict[str, Any]:
    """Public view of an account; never includes secrets"""
    return {
        "id": company.id,
        "username": company.username,
        "email": company.email,
        "role": company.role.value,
        "parent_id": company.parent_id,
        "points": company.points,
        "is_active": company.is_active,
        "status": company.status.value,
        "recharge_perm": company.recharge_perm,
        "withdraw_perm": company.withdraw_perm,
        "agent_protect": company.agent_protect,
        "contact_number": company.contact_number,
        "remarks": company.remarks,
        "two_factor_enabled": company.two_factor_enabled,
        "last_logged_in": company.last_logged_in,
        "created_at": company.created_at,
        "updated_at": company.updated_at,
        "deleted_at": company.deleted_at,
    }

def _authorize_manage(session: Session, actor: Company, target: Company) -> None:
    if actor.role == Role.ADMIN:
        return
    if not hierarchy.is_descendant(session, actor.id, target.id):
        raise PermissionDenied("Access denied: user is not in your downline")

def _authorize_permission_fields(actor: Company, target: Company, patch: Dict[str, Any]) -> None:
    if actor.role == Role.ADMIN or not PERMISSION_FIELDS & set(patch):
        return
    reason = roles.assign_denial_reason(actor.role, target.role)
    if reason:
        raise PermissionDenied(f"Cannot change permissions: {reason}", field=sorted(PERMISSION_FIELDS & set(patch))[0])

def _check_unique(session: Session, username: Optional[str], email: Optional[str], exclude_id: str = None) -> None:
    clauses = []
    if username:
        clauses.append(Company.username == username)
    if email:
        clauses.append(Company.email == email)
    if not clauses:
        return
    stmt = select(Company.username, Company.email).where(or_(*clauses))
    if exclude_id:
        stmt = stmt.where(Company.id != exclude_id)
    for existing_username, existing_email in session.execute(stmt).all():
        if username and existing_username == username:
            raise Conflict("Username already exists", field="username")
        if email and existing_email == email:
            raise Conflict("Email already exists", field="email")

def _clean_patch(patch: Dict[str, Any], allowed: set) -> Dict[str, Any]:
    unknown = set(patch) - allowed
    if unknown:
        raise ValidationFailed(f"Fields cannot be updated: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
    nulls = sorted(f for f in PERMISSION_FIELDS & set(patch) if patch[f] is None)
    if nulls:
        raise ValidationFailed(f"Field cannot be null: {nulls[0]}", field=nulls[0])
    cleaned = dict(patch)
    if "email" in cleaned:
        cleaned["email"] = _normalize_email(cleaned["email"])
    return cleaned

def _normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    if not email:
        return None
    if "@" not in email:
        raise ValidationFailed("Invalid email address", field="email")
    return email

def _is_unique_violation(error: IntegrityError) -> bool:
    # sqlite: "UNIQUE constraint failed", mysql: 1062 "Duplicate entry"
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message

def _commit_unique(session: Session, work):
    """Run ``work`` atomically, mapping a lost uniqueness race to Conflict"""
    try:
        return run_atomic(session, work)
    except IntegrityError as e:
        if not _is_unique_violation(e):
            raise
        logger.warning(f"Uniqueness violation: {e.orig}")
        raise Conflict("Username or email already exists")

def create_account(session: Session, creator_id: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    """Create a direct child of ``creator_id``.

    ``spec`` needs ``username``, ``password`` and ``role``; the manager
    fields are optional. The new account starts at 0 points.
    """
    username = (spec.get("username") or "").strip()
    password = spec.get("password") or ""
    role_value = spec.get("role")
    if not username or not password or not role_value:
        raise ValidationFailed("Username, password and role are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")
    try:
        new_role = roles.as_role(role_value)
    except ValueError:
        raise ValidationFailed(f"Unknown role: {role_value}", field="role")
    extras = _clean_patch({k: v for k, v in spec.items() if k in OPTIONAL_CREATE_FIELDS}, OPTIONAL_CREATE_FIELDS)
    hashed = hash_password(password)

    def create_unit() -> Dict[str, Any]:
        creator = hierarchy.require_actor(session, creator_id)
        reason = roles.create_denial_reason(creator.role, new_role)
        if reason:
            raise PermissionDenied(reason, field="role")
        _check_unique(session, username, extras.get("email"))

        company = Company(
            username=username,
            password=hashed,
            role=new_role,
            parent_id=creator.id,
            points=ZERO,
            is_active=True,
            status=Status.ACTIVE,
            **extras,
        )
        session.add(company)
        session.flush()
        record_audit(
            session,
            actor_id=creator.id,
            action="CREATE_USER",
            target_id=company.id,
            details={"username": username, "role": new_role.value},
        )
        return account_to_dict(company)

    result = _commit_unique(session, create_unit)
    redis_cache.invalidate("company")
    logger.info(f"Account {result['username']} ({result['role']}) created by {creator_id}")
    return result

def update_account(session: Session, actor_id: str, target_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Manager-side update of a descendant's manager fields"""
    if actor_id == target_id:
        raise PermissionDenied("Use the profile endpoint to update your own account")
    patch = _clean_patch(patch, MANAGER_FIELDS)

    def update_unit() -> Dict[str, Any]:
        actor = hierarchy.require_actor(session, actor_id)
        target = hierarchy.require_live(session, target_id)
        _authorize_manage(session, actor, target)
        _authorize_permission_fields(actor, target, patch)
        if patch.get("email"):
            _check_unique(session, None, patch["email"], exclude_id=target.id)
        for field, value in patch.items():
            setattr(target, field, value)
        session.flush()
        record_audit(session, actor_id=actor.id, action="UPDATE_USER", target_id=target.id, details=patch)
        return account_to_dict(target)

    result = _commit_unique(session, update_unit)
    redis_cache.invalidate("company")
    return result

def toggle_status(session: Session, actor_id: str, target_id: str, status: Any) -> Dict[str, Any]:
    try:
        status = Status(status)
    except ValueError:
        raise ValidationFailed(f"Unknown status: {status}", field="status")
    if status == Status.DELETED:
        raise ValidationFailed("Use the delete operation to remove an account", field="status")

    def toggle_unit() -> Dict[str, Any]:
        actor = hierarchy.require_actor(session, actor_id)
        target = hierarchy.require_live(session, target_id)
        if target.role == Role.ADMIN:
            raise PermissionDenied("Admin accounts cannot be deactivated")
        _authorize_manage(session, actor, target)
        previous = target.status
        target.status = status
        target.is_active = status == Status.ACTIVE
        session.flush()
        record_audit(
            session,
            actor_id=actor.id,
            action="TOGGLE_STATUS",
            target_id=target.id,
            details={"from": previous.value, "to": status.value},
        )
        return account_to_dict(target)

    result = run_atomic(session, toggle_unit)
    redis_cache.invalidate("company")
    logger.info(f"Account {target_id} set to {status.value} by {actor_id}")
    return result

def soft_delete(session: Session, actor_id: str, target_id: str) -> Dict[str, Any]:
    """Mark an account deleted; children, wallet and ledger are kept"""
    def delete_unit() -> Dict[str, Any]:
        actor = hierarchy.require_actor(session, actor_id)
        target = hierarchy.require_live(session, target_id)
        if target.role == Role.ADMIN:
            raise PermissionDenied("Admin accounts cannot be deleted")
        _authorize_manage(session, actor, target)
        target.deleted_at = datetime.now()
        target.status = Status.DELETED
        target.is_active = False
        session.flush()
        record_audit(
            session,
            actor_id=actor.id,
            action="DELETE_USER",
            target_id=target.id,
            details={"username": target.username},
        )
        return account_to_dict(target)

    result = run_atomic(session, delete_unit)
    redis_cache.invalidate("company")
    logger.info(f"Account {target_id} deleted by {actor_id}")
    return result

def update_profile(session: Session, actor_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    patch = _clean_patch(patch, PROFILE_FIELDS)

    def profile_unit() -> Dict[str, Any]:
        actor = hierarchy.require_actor(session, actor_id)
        if patch.get("email"):
            _check_unique(session, None, patch["email"], exclude_id=actor.id)
        for field, value in patch.items():
            setattr(actor, field, value)
        session.flush()
        record_audit(session, actor_id=actor.id, action="UPDATE_PROFILE", target_id=actor.id, details=patch)
        return account_to_dict(actor)

    result = _commit_unique(session, profile_unit)
    redis_cache.invalidate("company")
    return result

def change_password(session: Session, actor_id: str, old_password: str, new_password: str) -> None:
    if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="new_password")

    def password_unit() -> None:
        actor = hierarchy.require_actor(session, actor_id)
        if not verify_password(old_password or "", actor.password):
            raise ValidationFailed("Current password is incorrect", field="old_password")
        actor.password = hash_password(new_password)
        session.flush()
        record_audit(session, actor_id=actor.id, action="CHANGE_PASSWORD", target_id=actor.id, details={})

    run_atomic(session, password_unit)
    logger.info(f"Password changed for {actor_id}")

def authenticate(session: Session, username: str, password: str) -> Company:
    """Check credentials and stamp ``last_logged_in``"""
    def login_unit() -> Company:
        company = session.scalars(
            select(Company).where(Company.username == username).execution_options(populate_existing=True)
        ).first()
        if company is None or not verify_password(password or "", company.password):
            raise Unauthorized("Invalid username or password")
        if company.deleted_at is not None or company.status == Status.DELETED:
            raise Unauthorized("Invalid username or password")
        if not company.is_active or company.status != Status.ACTIVE:
            raise Unauthorized("Account is not active")
        company.last_logged_in = datetime.now()
        session.flush()
        return company

    return run_atomic(session, login_unit)

def get_account(session: Session, actor_id: str, target_id: str) -> Dict[str, Any]:
    """An account visible to the actor: itself, a descendant, or anyone for ADMIN"""
    actor = hierarchy.require_actor(session, actor_id)
    if actor.role != Role.ADMIN and not hierarchy.is_descendant(session, actor.id, target_id):
        raise PermissionDenied("Access denied: user is not in your downline")

    def load() -> Optional[Dict[str, Any]]:
        target = hierarchy.get_company(session, target_id)
        if target is None or target.deleted_at is not None:
            return None
        return jsonable(account_to_dict(target))

    cached = redis_cache.fetch("company", "get", (target_id,), load)
    if cached is None:
        raise NotFound("User not found", context={"id": target_id})
    return restore(cached)

def get_me(session: Session, actor_id: str) -> Dict[str, Any]:
    """The actor's own account with wallet balance and parent summary"""
    actor = hierarchy.require_actor(session, actor_id)
    result = account_to_dict(actor)
    balance = session.scalar(select(Wallet.balance).where(Wallet.company_id == actor.id))
    result["balance"] = balance if balance is not None else ZERO
    result["parent"] = None
    if actor.parent_id:
        parent = hierarchy.get_company(session, actor.parent_id)
        if parent is not None:
            result["parent"] = {"id": parent.id, "username": parent.username, "role": parent.role.value}
    result["creatable_roles"] = [r.value for r in roles.creatable_roles(actor.role)]
    result["assignable_roles"] = [r.value for r in roles.assignable_roles(actor.role)]
    return result

def _children_page(session: Session, parent_id: str, page: int, limit: int) -> Dict[str, Any]:
    found = hierarchy.list_children(session, parent_id, page, limit)
    total = found["total"]
    return {
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        },
        "data": [account_to_dict(c) for c in found["items"]],
    }

def list_my_users(session: Session, actor_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    actor = hierarchy.require_actor(session, actor_id)
    return _children_page(session, actor.id, page, limit)

def list_users_by_parent(session: Session, actor_id: str, parent_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    actor = hierarchy.require_actor(session, actor_id)
    if hierarchy.get_company(session, parent_id) is None:
        raise NotFound("User not found", context={"id": parent_id})
    if actor.role != Role.ADMIN and not hierarchy.is_descendant(session, actor.id, parent_id):
        raise PermissionDenied("Access denied: user is not in your downline")
    return _children_page(session, parent_id, page, limit)

def create_root_admin(session: Session, username: str, password: str, email: Optional[str] = None) -> Dict[str, Any]:
    """Create a top-level ADMIN (no parent); the only way a root account comes to exist"""
    username = (username or "").strip()
    if not username or not password:
        raise ValidationFailed("Username and password are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")
    email = _normalize_email(email)
    hashed = hash_password(password)

    def root_unit() -> Dict[str, Any]:
        _check_unique(session, username, email)
        admin = Company(
            username=username,
            password=hashed,
            email=email,
            role=Role.ADMIN,
            parent_id=None,
            points=ZERO,
            is_active=True,
            status=Status.ACTIVE,
        )
        session.add(admin)
        session.flush()
        record_audit(session, actor_id=None, action="CREATE_ROOT_ADMIN", target_id=admin.id, details={"username": username})
        return account_to_dict(admin)

    result = _commit_unique(session, root_unit)
    redis_cache.invalidate("company")
    logger.info(f"Root admin {username} created")
    return result
