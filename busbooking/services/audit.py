import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from busbooking.models.models import AuditLog

logger = logging.getLogger(__name__)


def _jsonable(detail: dict) -> dict:
    # amounts are stored as strings so the JSON column keeps exact values
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in (detail or {}).items()}


async def log_audit(db: AsyncSession, actor_id: str, action: str, object_type: str = None, object_id: str = None, detail: dict = None):
    audit = AuditLog(
        actor_id=actor_id,
        action=action,
        object_type=object_type,
        object_id=object_id,
        detail=_jsonable(detail) if detail else None,
    )
    db.add(audit)
    logger.info("audit %s by %s on %s %s", action, actor_id, object_type, object_id)
    # added to the caller's transaction; committed or rolled back with it
    return audit
