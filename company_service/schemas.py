from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from company_service.models import Role, Status

# --- requests ---------------------------------------------------------------

class LoginRequest(BaseModel):
    username: str
    password: str

class CreateAccountRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)
    role: Role
    email: Optional[str] = None
    contact_number: Optional[str] = None
    remarks: Optional[str] = None
    recharge_perm: bool = False
    withdraw_perm: bool = False
    agent_protect: bool = False

class UpdateAccountRequest(BaseModel):
    email: Optional[str] = None
    contact_number: Optional[str] = None
    remarks: Optional[str] = None
    # may be omitted, never null
    recharge_perm: bool = None
    withdraw_perm: bool = None
    agent_protect: bool = None

class UpdateProfileRequest(BaseModel):
    email: Optional[str] = None
    contact_number: Optional[str] = None
    remarks: Optional[str] = None

class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str

class StatusRequest(BaseModel):
    status: Status

class LoadCoinsRequest(BaseModel):
    amount: Decimal

class AssignCoinsRequest(BaseModel):
    target_id: str
    amount: Decimal

# --- responses --------------------------------------------------------------

class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class DownlineMeta(PageMeta):
    sort_by: str
    sort_order: str

class AccountOut(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    role: Role
    parent_id: Optional[str] = None
    points: Decimal
    is_active: bool
    status: Status
    recharge_perm: bool
    withdraw_perm: bool
    agent_protect: bool
    contact_number: Optional[str] = None
    remarks: Optional[str] = None
    two_factor_enabled: bool = False
    last_logged_in: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

class AccountRef(BaseModel):
    id: str
    username: str
    role: Role

class MeOut(AccountOut):
    balance: Decimal
    parent: Optional[AccountRef] = None
    creatable_roles: List[Role] = []
    assignable_roles: List[Role] = []

class DownlineAccount(AccountOut):
    balance: Decimal

class AccountPage(BaseModel):
    meta: PageMeta
    data: List[AccountOut]

class DownlinePage(BaseModel):
    meta: DownlineMeta
    data: List[DownlineAccount]

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountOut

class PaymentOut(BaseModel):
    id: str
    company_id: str
    amount: Decimal
    currency: str
    topup_balance: Decimal
    merchant: str
    status: str
    created_at: Optional[datetime] = None

class LedgerEntryOut(BaseModel):
    id: int
    company_id: str
    wallet_id: str
    type: str
    amount: Decimal
    balance: Decimal
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    payment_id: Optional[str] = None
    remark: Optional[str] = None
    created_at: Optional[datetime] = None

class TransactionOut(LedgerEntryOut):
    company: AccountRef
    counterpart: Optional[AccountRef] = None

class TransactionPage(BaseModel):
    meta: PageMeta
    data: List[TransactionOut]

class LoadResult(BaseModel):
    message: str
    payment: PaymentOut
    ledger: LedgerEntryOut
    new_balance: Decimal

class TransferResult(BaseModel):
    message: str
    sender_balance: Decimal
    target_balance: Decimal
    withdraw: LedgerEntryOut
    recharge: LedgerEntryOut

class BalanceOut(BaseModel):
    company_id: str
    balance: Decimal

class ReconcileOut(BaseModel):
    company_id: str
    balance: Decimal
    ledger_sum: Decimal
    points: Decimal
    last_snapshot: Optional[Decimal] = None
    consistent: bool

class TreeNode(BaseModel):
    id: str
    username: str
    role: Role
    status: Status
    balance: Decimal
    points: Decimal
    children_count: int
    created_at: Optional[datetime] = None
    children: List["TreeNode"] = []

class RoleBalance(BaseModel):
    role: Role
    count: int
    total_balance: Decimal

class BalanceRow(BaseModel):
    id: str
    username: str
    role: Role
    balance: Decimal
    status: Optional[Status] = None

class WalletSummary(BaseModel):
    total_balance: Decimal
    average_balance: Decimal
    wallet_count: int
    by_role: List[RoleBalance]
    low_balance_users: List[BalanceRow]
    high_balance_users: List[BalanceRow]

class PeriodOut(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    label: str

class ActorSummary(BaseModel):
    id: str
    username: str
    role: Role
    status: Status
    points: Decimal

class AmountCount(BaseModel):
    amount: Decimal
    count: int

class OverviewStats(BaseModel):
    total_downline: int
    active_users: int
    inactive_users: int
    new_users: int
    total_balance: Decimal
    total_bets: AmountCount
    total_wins: AmountCount
    net_revenue: Decimal
    house_edge: Decimal
    total_commissions: Decimal

class LedgerTypeTotal(AmountCount):
    type: str

class MovementOut(LedgerEntryOut):
    company: AccountRef

class DownlineOverview(BaseModel):
    period: PeriodOut
    actor: ActorSummary
    overview: OverviewStats
    ledger_by_type: List[LedgerTypeTotal]
    recent_movements: List[MovementOut]
    adjustments: List[MovementOut]

class MembershipOut(BaseModel):
    root_id: str
    target_id: str
    contains: bool

class RoleCheckOut(BaseModel):
    from_role: Role
    to_role: Role
    allowed: bool
    reason: Optional[str] = None

class MessageOut(BaseModel):
    message: str

TreeNode.model_rebuild()
