"""
Read-only views over an account's downline: the paginated listing, the
nested tree, the wallet summary and the ledger-based overview.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from common.error_handling import ValidationFailed
from common.redis_client import redis_cache
from company_service import hierarchy
from company_service.accounts import account_to_dict
from company_service.models import ZERO, Company, LedgerEntry, LedgerType, Role, Status, Wallet
from company_service.serialization import jsonable, restore
from company_service.wallet import entry_to_dict

logger = logging.getLogger(__name__)

ALL_STATUS = "ALL_STATUS"
ALL_ROLES = "ALL"

SORTABLE_COLUMNS = {
    "username": Company.username,
    "email": Company.email,
    "role": Company.role,
    "points": Company.points,
    "is_active": Company.is_active,
    "status": Company.status,
    "created_at": Company.created_at,
    "updated_at": Company.updated_at,
    "last_logged_in": Company.last_logged_in,
    "contact_number": Company.contact_number,
}
DEFAULT_SORT = "created_at"

LOW_BALANCE = Decimal("100")
HIGH_BALANCE = Decimal("10000")
BALANCE_LIST_SIZE = 20
CENT = Decimal("0.01")

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_PERIOD = "30d"
CUSTOM_PERIOD = "custom"
RECENT_MOVEMENTS = 50

def _status_filter(status: Optional[str]) -> Optional[Status]:
    if status is None:
        return Status.ACTIVE
    if status == ALL_STATUS:
        return None
    try:
        return Status(status)
    except ValueError:
        raise ValidationFailed("Invalid status", field="status")

def _role_filter(role: Optional[str]) -> Optional[Role]:
    if role is None or role == ALL_ROLES:
        return None
    try:
        return Role(role)
    except ValueError:
        raise ValidationFailed("Invalid role", field="role")

def downline_page(
    session: Session,
    actor_id: str,
    page: int = 1,
    limit: int = 20,
    q: str = "",
    status: Optional[str] = None,
    role: Optional[str] = None,
    sort: str = DEFAULT_SORT,
    order: str = "desc",
) -> Dict[str, Any]:
    """Every account below the actor, filtered, sorted and paginated.

    ``status`` defaults to ACTIVE (``ALL_STATUS`` disables the filter),
    ``role`` defaults to every role. Unknown sort columns fall back to
    ``created_at``; nulls sort last in either direction.
    """
    actor = hierarchy.require_actor(session, actor_id)
    status_value = _status_filter(status)
    role_value = _role_filter(role)
    sort_by = sort if sort in SORTABLE_COLUMNS else DEFAULT_SORT
    sort_order = "asc" if (order or "").lower() == "asc" else "desc"

    tree = hierarchy.descendants_cte(actor.id)
    conditions = [Company.id.in_(select(tree.c.id))]
    search = (q or "").strip()
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            Company.username.ilike(pattern),
            Company.email.ilike(pattern),
            Company.contact_number.ilike(pattern),
        ))
    if status_value is not None:
        conditions.append(Company.status == status_value)
    if role_value is not None:
        conditions.append(Company.role == role_value)

    total = session.scalar(select(func.count()).select_from(Company).where(*conditions)) or 0

    column = SORTABLE_COLUMNS[sort_by]
    ordering = column.asc() if sort_order == "asc" else column.desc()
    rows = session.execute(
        select(Company, Wallet.balance)
        .outerjoin(Wallet, Wallet.company_id == Company.id)
        .where(*conditions)
        .order_by(column.is_(None), ordering, Company.id)
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()

    data = []
    for company, balance in rows:
        item = account_to_dict(company)
        item["balance"] = balance if balance is not None else ZERO
        data.append(item)

    return {
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit if limit else 0,
            "sort_by": sort_by,
            "sort_order": sort_order,
        },
        "data": data,
    }

def downline_tree(session: Session, root_id: str, max_depth: Optional[int] = None) -> Dict[str, Any]:
    """Nested tree rooted at ``root_id``, built from one closure query"""
    root = hierarchy.require_company(session, root_id)
    ids = hierarchy.descendant_ids(session, root.id, include_self=True)

    rows = session.execute(
        select(Company, Wallet.balance)
        .outerjoin(Wallet, Wallet.company_id == Company.id)
        .where(Company.id.in_(ids))
        .order_by(Company.created_at, Company.id)
    ).all()

    nodes: Dict[str, Dict[str, Any]] = {}
    parents: Dict[str, Optional[str]] = {}
    for company, balance in rows:
        nodes[company.id] = {
            "id": company.id,
            "username": company.username,
            "role": company.role.value,
            "status": company.status.value,
            "balance": balance if balance is not None else ZERO,
            "points": company.points,
            "children_count": 0,
            "created_at": company.created_at,
            "children": [],
        }
        parents[company.id] = company.parent_id

    for node_id, parent_id in parents.items():
        if node_id != root.id and parent_id in nodes:
            nodes[parent_id]["children_count"] += 1
            nodes[parent_id]["children"].append(nodes[node_id])

    if max_depth is not None:
        _prune(nodes[root.id], max_depth)
    return nodes[root.id]

def _prune(node: Dict[str, Any], depth: int) -> None:
    if depth <= 0:
        node["children"] = []
        return
    for child in node["children"]:
        _prune(child, depth - 1)

def _balance_row(company: Company, balance: Decimal, with_status: bool = False) -> Dict[str, Any]:
    row = {"id": company.id, "username": company.username, "role": company.role.value, "balance": balance}
    if with_status:
        row["status"] = company.status.value
    return row

def wallet_summary(
    session: Session,
    root_id: str,
    low: Decimal = LOW_BALANCE,
    high: Decimal = HIGH_BALANCE,
) -> Dict[str, Any]:
    """Balance totals over ``root_id`` and its downline.

    Totals include the root's own wallet; the low/high lists only cover the
    downline, at most 20 accounts each.
    """
    def load() -> Dict[str, Any]:
        tree = hierarchy.descendants_cte(root_id)
        downline = select(tree.c.id)
        in_scope = or_(Wallet.company_id == root_id, Wallet.company_id.in_(downline))

        balances = session.scalars(select(Wallet.balance).where(in_scope)).all()
        total = sum(balances, ZERO)
        count = len(balances)
        average = (total / count).quantize(CENT) if count else ZERO

        role_rows = session.execute(
            select(Company.role, func.count(), func.sum(Wallet.balance))
            .outerjoin(Wallet, Wallet.company_id == Company.id)
            .where(Company.id.in_(downline))
            .group_by(Company.role)
        ).all()
        by_role = [
            {"role": r.value, "count": n, "total_balance": Decimal(str(s)).quantize(CENT) if s is not None else ZERO}
            for r, n, s in role_rows
        ]

        low_rows = session.execute(
            select(Company, Wallet.balance)
            .join(Wallet, Wallet.company_id == Company.id)
            .where(Company.id.in_(downline), Wallet.balance < low)
            .order_by(Wallet.balance.asc(), Company.id)
            .limit(BALANCE_LIST_SIZE)
        ).all()
        high_rows = session.execute(
            select(Company, Wallet.balance)
            .join(Wallet, Wallet.company_id == Company.id)
            .where(Company.id.in_(downline), Wallet.balance > high)
            .order_by(Wallet.balance.desc(), Company.id)
            .limit(BALANCE_LIST_SIZE)
        ).all()

        return jsonable({
            "total_balance": total,
            "average_balance": average,
            "wallet_count": count,
            "by_role": by_role,
            "low_balance_users": [_balance_row(c, b, with_status=True) for c, b in low_rows],
            "high_balance_users": [_balance_row(c, b) for c, b in high_rows],
        })

    args = (root_id, str(low), str(high))
    return restore(redis_cache.fetch("wallet", "summary", args, load))

def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT) if value is not None else ZERO

def _date_range(
    start: Optional[datetime],
    end: Optional[datetime],
    period: str,
) -> Tuple[Optional[datetime], Optional[datetime], str]:
    if start is None and end is None:
        if period not in PERIOD_DAYS:
            raise ValidationFailed(f"Unknown period: {period}", field="period")
        end = datetime.now()
        return end - timedelta(days=PERIOD_DAYS[period]), end, period
    if start is not None and end is not None and start > end:
        raise ValidationFailed("start must not be after end", field="start")
    return start, end, CUSTOM_PERIOD

def _window(column, start: Optional[datetime], end: Optional[datetime]) -> List[Any]:
    conditions = []
    if start is not None:
        conditions.append(column >= start)
    if end is not None:
        conditions.append(column <= end)
    return conditions

def _movements(session: Session, downline, types: List[LedgerType], window: List[Any], limit: Optional[int]):
    stmt = (
        select(LedgerEntry, Company.username, Company.role)
        .join(Company, Company.id == LedgerEntry.company_id)
        .where(LedgerEntry.company_id.in_(downline), LedgerEntry.type.in_(types), *window)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = []
    for entry, username, role in session.execute(stmt).all():
        item = entry_to_dict(entry)
        item["company"] = {"id": entry.company_id, "username": username, "role": role.value}
        rows.append(item)
    return rows

def downline_overview(
    session: Session,
    actor_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    period: str = DEFAULT_PERIOD,
) -> Dict[str, Any]:
    """Ledger activity of the actor and its downline over a date range.

    Without ``start``/``end`` the range is the last ``period`` (7d, 30d, 90d
    or 1y). Bets, wins and the per-type breakdown cover the actor plus its
    downline; commissions, account counts and the movement lists cover the
    downline only.
    """
    actor = hierarchy.require_actor(session, actor_id)
    start, end, label = _date_range(start, end, period)

    tree = hierarchy.descendants_cte(actor.id)
    downline = select(tree.c.id)
    in_scope = or_(LedgerEntry.company_id == actor.id, LedgerEntry.company_id.in_(downline))
    window = _window(LedgerEntry.created_at, start, end)

    total_downline = session.scalar(
        select(func.count()).select_from(Company).where(Company.id.in_(downline))
    ) or 0
    active_users = session.scalar(
        select(func.count()).select_from(Company).where(Company.id.in_(downline), Company.status == Status.ACTIVE)
    ) or 0
    new_users = session.scalar(
        select(func.count()).select_from(Company)
        .where(Company.id.in_(downline), *_window(Company.created_at, start, end))
    ) or 0
    total_balance = session.scalar(
        select(func.sum(Wallet.balance)).where(
            or_(Wallet.company_id == actor.id, Wallet.company_id.in_(downline))
        )
    )

    by_type = {
        entry_type: {"type": entry_type.value, "amount": _money(amount), "count": count}
        for entry_type, amount, count in session.execute(
            select(LedgerEntry.type, func.sum(LedgerEntry.amount), func.count())
            .where(in_scope, *window)
            .group_by(LedgerEntry.type)
        ).all()
    }
    empty = {"amount": ZERO, "count": 0}
    bets = by_type.get(LedgerType.BET, empty)
    wins = by_type.get(LedgerType.WIN, empty)
    net_revenue = bets["amount"] - wins["amount"]
    house_edge = (net_revenue / bets["amount"] * 100).quantize(CENT) if bets["amount"] else ZERO

    commissions = session.scalar(
        select(func.sum(LedgerEntry.amount)).where(
            LedgerEntry.company_id.in_(downline), LedgerEntry.type == LedgerType.COMMISSION, *window
        )
    )

    return {
        "period": {"start": start, "end": end, "label": label},
        "actor": {
            "id": actor.id,
            "username": actor.username,
            "role": actor.role.value,
            "status": actor.status.value,
            "points": actor.points,
        },
        "overview": {
            "total_downline": total_downline,
            "active_users": active_users,
            "inactive_users": total_downline - active_users,
            "new_users": new_users,
            "total_balance": _money(total_balance),
            "total_bets": {"amount": bets["amount"], "count": bets["count"]},
            "total_wins": {"amount": wins["amount"], "count": wins["count"]},
            "net_revenue": net_revenue,
            "house_edge": house_edge,
            "total_commissions": _money(commissions),
        },
        "ledger_by_type": [by_type[t] for t in LedgerType if t in by_type],
        "recent_movements": _movements(
            session, downline, [LedgerType.RECHARGE, LedgerType.WITHDRAW], window, RECENT_MOVEMENTS
        ),
        "adjustments": _movements(session, downline, [LedgerType.ADJUSTMENT], window, None),
    }
