"""
Role policy: which role may create, manage or fund which other role.

Two separate rules are kept on purpose:

* ``can_create`` uses the total order over roles (strictly lower level);
* ``can_assign`` uses an explicit adjacency map (ADMIN reaches every
  non-admin role, everyone else only the role directly below).

Both are pure and never raise for a policy violation.
"""
from typing import Dict, List, Optional, Union

from company_service.models import Role

ROLE_LEVELS: Dict[Role, int] = {
    Role.ADMIN: 5,
    Role.DISTRIBUTOR: 4,
    Role.SUB_DISTRIBUTOR: 3,
    Role.STORE: 2,
    Role.PLAYER: 1,
}

ASSIGN_MAP: Dict[Role, List[Role]] = {
    Role.ADMIN: [Role.DISTRIBUTOR, Role.SUB_DISTRIBUTOR, Role.STORE, Role.PLAYER],
    Role.DISTRIBUTOR: [Role.SUB_DISTRIBUTOR],
    Role.SUB_DISTRIBUTOR: [Role.STORE],
    Role.STORE: [Role.PLAYER],
    Role.PLAYER: [],
}

def as_role(value: Union[Role, str]) -> Role:
    return value if isinstance(value, Role) else Role(value)

def level_of(role: Union[Role, str]) -> int:
    return ROLE_LEVELS[as_role(role)]

def can_create(creator_role: Union[Role, str], new_role: Union[Role, str]) -> bool:
    return level_of(new_role) < level_of(creator_role)

def can_assign(sender_role: Union[Role, str], receiver_role: Union[Role, str]) -> bool:
    return as_role(receiver_role) in ASSIGN_MAP[as_role(sender_role)]

def creatable_roles(role: Union[Role, str]) -> List[Role]:
    """Roles an account of ``role`` may create, highest first"""
    level = level_of(role)
    return sorted((r for r, l in ROLE_LEVELS.items() if l < level), key=level_of, reverse=True)

def assignable_roles(role: Union[Role, str]) -> List[Role]:
    return list(ASSIGN_MAP[as_role(role)])

def create_denial_reason(creator_role: Union[Role, str], new_role: Union[Role, str]) -> Optional[str]:
    """None when ``creator_role`` may create ``new_role``, otherwise why not"""
    if not can_create(creator_role, new_role):
        return "You cannot create a user with equal or higher role"
    return None

def assign_denial_reason(sender_role: Union[Role, str], receiver_role: Union[Role, str]) -> Optional[str]:
    if can_assign(sender_role, receiver_role):
        return None
    allowed = assignable_roles(sender_role)
    if not allowed:
        return f"{as_role(sender_role).value} cannot assign coins to anyone"
    return f"{as_role(sender_role).value} may only assign to {_names(allowed)}"

def _names(roles: List[Role]) -> str:
    return ", ".join(r.value for r in roles) or "nobody"
