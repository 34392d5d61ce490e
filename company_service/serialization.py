from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

# keys whose string values are restored to Decimal when read back from JSON
MONEY_FIELDS = {
    "amount", "balance", "points", "new_balance", "sender_balance", "target_balance",
    "topup_balance", "ledger_sum", "last_snapshot", "total_balance", "average_balance",
}

def jsonable(value: Any) -> Any:
    """Make a result dict safe for a JSON column or the cache"""
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value

def restore(value: Any, key: Optional[str] = None) -> Any:
    """Inverse of ``jsonable`` for money and ``*_at`` timestamp fields"""
    if isinstance(value, dict):
        return {k: restore(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [restore(v) for v in value]
    if isinstance(value, str) and key in MONEY_FIELDS:
        return Decimal(value)
    if isinstance(value, str) and key and key.endswith("_at"):
        return datetime.fromisoformat(value)
    return value
