import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from company_service.models import AuditLog

def record_audit(
    session: Session,
    *,
    actor_id: Optional[str],
    action: str,
    target_id: Optional[str],
    details: Dict[str, Any],
) -> AuditLog:
    """Append an audit row inside the caller's transaction"""
    # round-trip through json so Decimals and enums are stored as plain values
    log = AuditLog(
        actor_id=actor_id,
        action=action,
        target_id=target_id,
        details=json.loads(json.dumps(details, default=str)),
    )
    session.add(log)
    session.flush()
    return log
