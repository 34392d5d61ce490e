"""
Hierarchy store queries and the membership oracle.

``parent_id`` never changes after an account is created, so the tree can be
read without coordination between concurrent requests.
"""
import logging
from typing import List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased

from common.error_handling import NotFound, Unauthorized
from company_service.models import Company, Status

logger = logging.getLogger(__name__)

def get_company(session: Session, company_id: str, for_update: bool = False) -> Optional[Company]:
    stmt = select(Company).where(Company.id == company_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).first()

def require_company(session: Session, company_id: str, for_update: bool = False) -> Company:
    company = get_company(session, company_id, for_update=for_update)
    if company is None:
        raise NotFound("User not found", context={"id": company_id})
    return company

def require_live(session: Session, company_id: str) -> Company:
    """An account that exists and has not been soft-deleted"""
    company = get_company(session, company_id)
    if company is None or company.deleted_at is not None or company.status == Status.DELETED:
        raise NotFound("User not found", context={"id": company_id})
    return company

def require_actor(session: Session, actor_id: str) -> Company:
    """The authenticated account, which must still exist and be active"""
    actor = get_company(session, actor_id)
    if actor is None or actor.deleted_at is not None or actor.status == Status.DELETED:
        raise Unauthorized("Unauthorized")
    if not actor.is_active or actor.status != Status.ACTIVE:
        raise Unauthorized("Account is not active")
    return actor

def is_descendant(session: Session, root_id: str, target_id: str) -> bool:
    """True when ``target_id`` is ``root_id`` or lies anywhere below it.

    Expands the tree one level per query (frontier of parent ids), stopping
    as soon as the target shows up or a level comes back empty.
    """
    if root_id == target_id:
        return True

    visited: Set[str] = {root_id}
    frontier: List[str] = [root_id]
    while frontier:
        children = session.scalars(
            select(Company.id).where(Company.parent_id.in_(frontier))
        ).all()
        next_frontier = []
        for child_id in children:
            if child_id == target_id:
                return True
            if child_id not in visited:
                visited.add(child_id)
                next_frontier.append(child_id)
        frontier = next_frontier
    return False

def descendants_cte(root_id: str):
    """Recursive CTE yielding the ids of every account below ``root_id``"""
    base = (
        select(Company.id.label("id"))
        .where(Company.parent_id == root_id)
        .cte("descendants", recursive=True)
    )
    found = base.alias()
    child = aliased(Company)
    return base.union_all(
        select(child.id).where(child.parent_id == found.c.id)
    )

def descendant_ids(session: Session, root_id: str, include_self: bool = False) -> List[str]:
    tree = descendants_cte(root_id)
    ids = list(session.scalars(select(tree.c.id)).all())
    if include_self:
        ids.insert(0, root_id)
    return ids

def ancestor_ids(session: Session, company_id: str) -> List[str]:
    """Parent chain from the direct parent up to the root"""
    chain: List[str] = []
    seen = {company_id}
    current = session.scalar(select(Company.parent_id).where(Company.id == company_id))
    while current is not None:
        if current in seen:
            # parent pointers are written once at creation; a loop means corrupted data
            logger.error(f"Cycle detected in hierarchy above {company_id}", extra={"at": current})
            break
        chain.append(current)
        seen.add(current)
        current = session.scalar(select(Company.parent_id).where(Company.id == current))
    return chain

def list_children(session: Session, parent_id: str, page: int = 1, limit: int = 20) -> dict:
    total = session.scalar(select(func.count()).select_from(Company).where(Company.parent_id == parent_id))
    rows = session.scalars(
        select(Company)
        .where(Company.parent_id == parent_id)
        .order_by(Company.created_at.desc(), Company.id)
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    return {"total": total or 0, "items": list(rows)}
