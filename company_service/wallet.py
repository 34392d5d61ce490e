"""
Wallet ledger engine.

Every balance change happens inside one transaction that also writes the
ledger row(s), mirrors the new balance into ``Company.points`` and appends an
audit record. Wallet rows are read with ``SELECT ... FOR UPDATE`` (in a fixed
id order when two wallets are involved) before the new balance is computed,
so two requests draining the same wallet are serialized by the store.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from common.error_handling import (
    Conflict, InsufficientBalance, InvalidAmount, PermissionDenied, ValidationFailed,
)
from common.redis_client import redis_cache
from company_service import hierarchy, roles
from company_service.audit import record_audit
from company_service.db import run_atomic
from company_service.serialization import jsonable, restore
from company_service.models import (
    LEDGER_SIGN, ZERO, Company, IdempotencyRecord, LedgerEntry, LedgerType, Payment, PaymentMerchant,
    PaymentStatus, Role, Wallet,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
# Numeric(18, 2) column limit
MAX_AMOUNT = Decimal("9999999999999999.99")
ACCOUNT_SOURCE = "ACCOUNT"
PAYMENT_SOURCE = "PAYMENT"
# idempotency_keys.key column width
IDEMPOTENCY_KEY_MAX = 128

def parse_amount(value: Any) -> Decimal:
    """Validate a coin amount: positive, finite, at most two decimals"""
    if isinstance(value, bool) or value is None:
        raise InvalidAmount("Amount must be a positive number", field="amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount("Amount must be a positive number", field="amount")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be a positive number", field="amount")
    if amount > MAX_AMOUNT:
        raise InvalidAmount("Amount is too large", field="amount")
    quantized = amount.quantize(CENT)
    if amount != quantized:
        raise InvalidAmount("Amount supports at most two decimal places", field="amount")
    return quantized

# -- serialization -----------------------------------------------------------

def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "company_id": payment.company_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "topup_balance": payment.topup_balance,
        "merchant": payment.merchant.value,
        "status": payment.status.value,
        "created_at": payment.created_at,
    }

def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "company_id": entry.company_id,
        "wallet_id": entry.wallet_id,
        "type": entry.type.value,
        "amount": entry.amount,
        "balance": entry.balance,
        "source_type": entry.source_type,
        "source_id": entry.source_id,
        "payment_id": entry.payment_id,
        "remark": entry.remark,
        "created_at": entry.created_at,
    }

# -- idempotency -------------------------------------------------------------

def _check_key(key: Optional[str]) -> None:
    if key is not None and len(key) > IDEMPOTENCY_KEY_MAX:
        raise ValidationFailed(
            f"Idempotency key must be at most {IDEMPOTENCY_KEY_MAX} characters", field="idempotency_key"
        )

def _replay(session: Session, key: Optional[str], actor_id: str, operation: str) -> Optional[Dict[str, Any]]:
    if not key:
        return None
    record = session.get(IdempotencyRecord, key, populate_existing=True)
    if record is None:
        return None
    if record.actor_id != actor_id or record.operation != operation:
        raise Conflict("Idempotency key was already used for a different request", field="idempotency_key")
    logger.info(f"Replaying {operation} for idempotency key {key}")
    return restore(record.response)

def _remember(session: Session, key: Optional[str], actor_id: str, operation: str, result: Dict[str, Any]) -> None:
    if not key:
        return
    session.add(IdempotencyRecord(key=key, actor_id=actor_id, operation=operation, response=jsonable(result)))
    session.flush()

def _run_idempotent(session: Session, key: Optional[str], actor_id: str, operation: str, work) -> Dict[str, Any]:
    try:
        return run_atomic(session, work)
    except IntegrityError:
        # a concurrent request with the same key committed first
        if not key:
            raise
        replayed = run_atomic(session, lambda: _replay(session, key, actor_id, operation))
        if replayed is None:
            raise
        return replayed

# -- wallet primitives -------------------------------------------------------

def lock_wallet(session: Session, company_id: str) -> Wallet:
    """Return the company's wallet row locked for update, creating it at 0 if absent"""
    stmt = (
        select(Wallet)
        .where(Wallet.company_id == company_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    wallet = session.scalars(stmt).first()
    if wallet is not None:
        return wallet
    try:
        with session.begin_nested():
            wallet = Wallet(company_id=company_id, balance=ZERO)
            session.add(wallet)
    except IntegrityError:
        wallet = session.scalars(stmt).one()
    return wallet

def _settle(company: Company, wallet: Wallet, new_balance: Decimal) -> None:
    wallet.balance = new_balance
    # points always mirrors the wallet; never adjusted on its own
    company.points = new_balance

# -- operations --------------------------------------------------------------

def load_self(session: Session, admin_id: str, amount: Any, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    """Admin tops up their own wallet (external inflow, no counterpart debit)"""
    amount = parse_amount(amount)
    _check_key(idempotency_key)

    def load_self_unit() -> Dict[str, Any]:
        replayed = _replay(session, idempotency_key, admin_id, "LOAD_SELF")
        if replayed is not None:
            return replayed

        admin = hierarchy.require_actor(session, admin_id)
        if admin.role != Role.ADMIN:
            raise PermissionDenied("Only admins can load coins")

        wallet = lock_wallet(session, admin.id)
        new_balance = wallet.balance + amount

        payment = Payment(
            company_id=admin.id,
            amount=amount,
            currency="COIN",
            topup_balance=amount,
            merchant=PaymentMerchant.ADMIN,
            status=PaymentStatus.PAID,
        )
        session.add(payment)
        session.flush()

        entry = LedgerEntry(
            company_id=admin.id,
            wallet_id=wallet.id,
            type=LedgerType.RECHARGE,
            amount=amount,
            balance=new_balance,
            source_type=PAYMENT_SOURCE,
            source_id=payment.id,
            payment_id=payment.id,
            remark=f"Coin load by admin ({admin.username})",
        )
        session.add(entry)
        _settle(admin, wallet, new_balance)
        session.flush()

        record_audit(
            session,
            actor_id=admin.id,
            action="LOAD_COINS",
            target_id=admin.id,
            details={"amount": amount, "new_balance": new_balance, "payment_id": payment.id},
        )

        result = {
            "message": f"Successfully loaded {amount} coins",
            "payment": payment_to_dict(payment),
            "ledger": entry_to_dict(entry),
            "new_balance": new_balance,
        }
        _remember(session, idempotency_key, admin_id, "LOAD_SELF", result)
        return result

    result = _run_idempotent(session, idempotency_key, admin_id, "LOAD_SELF", load_self_unit)
    redis_cache.invalidate("wallet", "ledger", "company")
    logger.info(f"Admin {admin_id} loaded {amount} coins; balance={result['new_balance']}")
    return result

def transfer(
    session: Session,
    sender_id: str,
    target_id: str,
    amount: Any,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Move coins from the sender's wallet to the target's wallet.

    Non-admin senders may only reach accounts in their own subtree, and only
    roles allowed by the assign map. ADMIN skips the subtree check but is
    still bound by the assign map.
    """
    amount = parse_amount(amount)
    _check_key(idempotency_key)
    if sender_id == target_id:
        raise ValidationFailed("Cannot assign coins to yourself", field="target_id")

    def transfer_unit() -> Dict[str, Any]:
        replayed = _replay(session, idempotency_key, sender_id, "TRANSFER")
        if replayed is not None:
            return replayed

        sender = hierarchy.require_actor(session, sender_id)
        target = hierarchy.require_live(session, target_id)

        if sender.role != Role.ADMIN and not hierarchy.is_descendant(session, sender.id, target.id):
            raise PermissionDenied("Access denied: target is not in your downline")
        reason = roles.assign_denial_reason(sender.role, target.role)
        if reason:
            raise PermissionDenied(reason)

        # fixed lock order keeps two opposite transfers from deadlocking
        wallets = {cid: lock_wallet(session, cid) for cid in sorted((sender.id, target.id))}
        sender_wallet = wallets[sender.id]
        target_wallet = wallets[target.id]

        if sender_wallet.balance < amount:
            raise InsufficientBalance(
                "Insufficient balance",
                context={"balance": str(sender_wallet.balance), "required": str(amount)},
            )

        sender_balance = sender_wallet.balance - amount
        target_balance = target_wallet.balance + amount
        _settle(sender, sender_wallet, sender_balance)
        _settle(target, target_wallet, target_balance)

        withdraw = LedgerEntry(
            company_id=sender.id,
            wallet_id=sender_wallet.id,
            type=LedgerType.WITHDRAW,
            amount=amount,
            balance=sender_balance,
            source_type=ACCOUNT_SOURCE,
            source_id=target.id,
            remark=f"Coins assigned to {target.username}",
        )
        recharge = LedgerEntry(
            company_id=target.id,
            wallet_id=target_wallet.id,
            type=LedgerType.RECHARGE,
            amount=amount,
            balance=target_balance,
            source_type=ACCOUNT_SOURCE,
            source_id=sender.id,
            remark=f"Coins received from {sender.username}",
        )
        session.add_all([withdraw, recharge])
        session.flush()

        record_audit(
            session,
            actor_id=sender.id,
            action="ASSIGN_COINS",
            target_id=target.id,
            details={
                "amount": amount,
                "sender_username": sender.username,
                "target_username": target.username,
                "sender_balance": sender_balance,
                "target_balance": target_balance,
            },
        )

        result = {
            "message": f"Successfully assigned {amount} coins to {target.username}",
            "sender_balance": sender_balance,
            "target_balance": target_balance,
            "withdraw": entry_to_dict(withdraw),
            "recharge": entry_to_dict(recharge),
        }
        _remember(session, idempotency_key, sender_id, "TRANSFER", result)
        return result

    result = _run_idempotent(session, idempotency_key, sender_id, "TRANSFER", transfer_unit)
    redis_cache.invalidate("wallet", "ledger", "company")
    logger.info(f"Transfer {sender_id} -> {target_id}: {amount}")
    return result

def post_entry(
    session: Session,
    company_id: str,
    entry_type: LedgerType,
    amount: Any,
    source_type: Optional[str] = None,
    source_id: Optional[str] = None,
    remark: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Post a single credit or debit (bet, win, commission, adjustment) to one wallet.

    The direction comes from the entry type; a debit larger than the balance
    is rejected with InsufficientBalance.
    """
    amount = parse_amount(amount)
    entry_type = LedgerType(entry_type)
    sign = LEDGER_SIGN[entry_type]

    def post_entry_unit() -> Dict[str, Any]:
        company = hierarchy.require_live(session, company_id)
        wallet = lock_wallet(session, company.id)
        if sign < 0 and wallet.balance < amount:
            raise InsufficientBalance(
                "Insufficient balance",
                context={"balance": str(wallet.balance), "required": str(amount)},
            )
        new_balance = wallet.balance + sign * amount
        entry = LedgerEntry(
            company_id=company.id,
            wallet_id=wallet.id,
            type=entry_type,
            amount=amount,
            balance=new_balance,
            source_type=source_type,
            source_id=source_id,
            remark=remark,
        )
        session.add(entry)
        _settle(company, wallet, new_balance)
        session.flush()
        record_audit(
            session,
            actor_id=actor_id,
            action=f"POST_{entry_type.value}",
            target_id=company.id,
            details={"amount": amount, "new_balance": new_balance, "source_id": source_id},
        )
        return {"ledger": entry_to_dict(entry), "new_balance": new_balance}

    result = run_atomic(session, post_entry_unit)
    redis_cache.invalidate("wallet", "ledger", "company")
    return result

# -- reads -------------------------------------------------------------------

def get_balance(session: Session, company_id: str) -> Decimal:
    """Wallet balance for display; transfers never read through this"""
    def load() -> str:
        balance = session.scalar(select(Wallet.balance).where(Wallet.company_id == company_id))
        return str(balance if balance is not None else ZERO)

    return Decimal(str(redis_cache.fetch("wallet", "balance", (company_id,), load)))

def ledger_sum(session: Session, company_id: str) -> Decimal:
    total = ZERO
    rows = session.execute(
        select(LedgerEntry.type, LedgerEntry.amount)
        .where(LedgerEntry.company_id == company_id)
        .order_by(LedgerEntry.created_at, LedgerEntry.id)
    ).all()
    for entry_type, amount in rows:
        total += LEDGER_SIGN[entry_type] * amount
    return total

def reconcile(session: Session, company_id: str) -> Dict[str, Any]:
    """Replay the ledger and compare it with the wallet and the points mirror"""
    company = hierarchy.require_company(session, company_id)
    balance = session.scalar(select(Wallet.balance).where(Wallet.company_id == company_id))
    balance = balance if balance is not None else ZERO
    replayed = ledger_sum(session, company_id)
    last_snapshot = session.scalar(
        select(LedgerEntry.balance)
        .where(LedgerEntry.company_id == company_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(1)
    )
    consistent = balance == replayed == company.points
    if not consistent:
        logger.error(
            f"Ledger drift for {company_id}",
            extra={"balance": str(balance), "ledger_sum": str(replayed), "points": str(company.points)},
        )
    return {
        "company_id": company_id,
        "balance": balance,
        "ledger_sum": replayed,
        "points": company.points,
        "last_snapshot": last_snapshot,
        "consistent": consistent,
    }

def list_transactions(
    session: Session,
    actor: Company,
    scope: str = "self",
    page: int = 1,
    limit: int = 20,
    entry_type: Optional[LedgerType] = None,
) -> Dict[str, Any]:
    """Paginated ledger rows for the actor ("self") or the actor plus its downline ("subtree").

    Each row carries the owning account and the counterpart account (for
    account-to-account movements) with username and role.
    """
    owner = aliased(Company)
    counterpart = aliased(Company)

    if scope == "subtree":
        tree = hierarchy.descendants_cte(actor.id)
        condition = (LedgerEntry.company_id == actor.id) | LedgerEntry.company_id.in_(select(tree.c.id))
    else:
        condition = LedgerEntry.company_id == actor.id
    if entry_type is not None:
        condition = condition & (LedgerEntry.type == LedgerType(entry_type))

    total = session.scalar(select(func.count()).select_from(LedgerEntry).where(condition)) or 0
    rows = session.execute(
        select(LedgerEntry, owner.username, owner.role, counterpart.username, counterpart.role)
        .join(owner, owner.id == LedgerEntry.company_id)
        .outerjoin(
            counterpart,
            (LedgerEntry.source_type == ACCOUNT_SOURCE) & (counterpart.id == LedgerEntry.source_id),
        )
        .where(condition)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()

    data: List[Dict[str, Any]] = []
    for entry, owner_name, owner_role, other_name, other_role in rows:
        item = entry_to_dict(entry)
        item["company"] = {"id": entry.company_id, "username": owner_name, "role": owner_role.value}
        item["counterpart"] = (
            {"id": entry.source_id, "username": other_name, "role": other_role.value}
            if other_name is not None else None
        )
        data.append(item)

    return {
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        },
        "data": data,
    }
