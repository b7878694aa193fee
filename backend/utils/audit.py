from database import database
from models import AuditLog, AuditAction, ActorRole
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Field-level changes between two billing snapshots.

    {"tier": {"from": "free", "to": "pro"}}; a field missing on one side is None.
    """
    before = before or {}
    after = after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[ActorRole] = ActorRole.SYSTEM,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Record a billing change (entitlement, customer link, failed event, canceled duplicate).

    Never raises: an audit failure must not fail the billing operation.
    Returns the audit id, or "" when the write failed.
    """
    details = dict(metadata or {})
    if before_state is not None and after_state is not None:
        changes = calculate_diff(before_state, after_state)
        if changes:
            details["changes"] = changes

    try:
        entry = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=details or None,
        )
        await database.get_db().audit_logs.insert_one(entry.model_dump(mode="json"))
    except Exception as e:
        logger.error(f"AUDIT_WRITE_FAILED action={action.value} user_id={user_id}: {e}")
        return ""

    logger.info(f"Audit {action.value} user_id={user_id} resource={resource_type}:{resource_id}")
    return entry.audit_id
