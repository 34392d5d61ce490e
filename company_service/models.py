import enum
import uuid
from decimal import Decimal
from sqlalchemy import (
    CheckConstraint, Column, String, BigInteger, Integer, Boolean, DateTime, Enum, ForeignKey, Index, JSON, Numeric, Text, func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MONEY = Numeric(18, 2)
ZERO = Decimal("0.00")

def new_id() -> str:
    return str(uuid.uuid4())

class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    DISTRIBUTOR = "DISTRIBUTOR"
    SUB_DISTRIBUTOR = "SUB_DISTRIBUTOR"
    STORE = "STORE"
    PLAYER = "PLAYER"

class Status(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BLOCK = "BLOCK"
    DELETED = "DELETED"

class LedgerType(str, enum.Enum):
    RECHARGE = "RECHARGE"
    WITHDRAW = "WITHDRAW"
    BET = "BET"
    WIN = "WIN"
    COMMISSION = "COMMISSION"
    ADJUSTMENT = "ADJUSTMENT"

# direction of each ledger type when replaying a wallet
LEDGER_SIGN = {
    LedgerType.RECHARGE: 1,
    LedgerType.WIN: 1,
    LedgerType.COMMISSION: 1,
    LedgerType.ADJUSTMENT: 1,
    LedgerType.WITHDRAW: -1,
    LedgerType.BET: -1,
}

class PaymentMerchant(str, enum.Enum):
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    ADMIN = "ADMIN"

class PaymentStatus(str, enum.Enum):
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"

class Company(Base):
    __tablename__ = "companies"
    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(64), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    role = Column(Enum(Role, name="role"), nullable=False, default=Role.PLAYER)
    parent_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    points = Column(MONEY, nullable=False, default=ZERO)
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(Enum(Status, name="status"), nullable=False, default=Status.ACTIVE)
    recharge_perm = Column(Boolean, nullable=False, default=False)
    withdraw_perm = Column(Boolean, nullable=False, default=False)
    agent_protect = Column(Boolean, nullable=False, default=False)
    contact_number = Column(String(32), nullable=True)
    remarks = Column(Text, nullable=True)
    last_logged_in = Column(DateTime, nullable=True)
    two_factor_secret = Column(String(255), nullable=True)
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    parent = relationship("Company", remote_side=[id])

class Wallet(Base):
    __tablename__ = "wallets"
    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(String(36), ForeignKey("companies.id"), unique=True, nullable=False)
    balance = Column(MONEY, nullable=False, default=ZERO)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
    )

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(8), nullable=False, default="COIN")
    topup_balance = Column(MONEY, nullable=False, default=ZERO)
    merchant = Column(Enum(PaymentMerchant, name="payment_merchant"), nullable=False)
    status = Column(Enum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

class LedgerEntry(Base):
    __tablename__ = "ledger"
    # autoincrement id doubles as the replay order for entries sharing a timestamp
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False)
    type = Column(Enum(LedgerType, name="ledger_type"), nullable=False)
    amount = Column(MONEY, nullable=False)
    balance = Column(MONEY, nullable=False)
    source_type = Column(String(32), nullable=True)
    source_id = Column(String(36), nullable=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True)
    remark = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_ledger_company_created", "company_id", "created_at"),
    )

class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(String(36), primary_key=True, default=new_id)
    actor_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    target_id = Column(String(36), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"
    key = Column(String(128), primary_key=True)
    actor_id = Column(String(36), nullable=False)
    operation = Column(String(32), nullable=False)
    response = Column(JSON, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
