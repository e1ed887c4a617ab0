from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

# Fields that change on every template write and would only add noise to a diff
VOLATILE_FIELDS = {"updated_at", "version", "file_id"}


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Field-level diff between two template (or letter) states.

    Returns a dict with any of:
    - added: fields only present after the change
    - removed: fields only present before the change
    - changed: {"from": ..., "to": ...} per field whose value differs
    """
    if not before and not after:
        return {}
    if not before:
        return {"added": after}
    if not after:
        return {"removed": before}

    diff = {"added": {}, "removed": {}, "changed": {}}
    for key in set(before) | set(after):
        if key in VOLATILE_FIELDS:
            continue
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    return {k: v for k, v in diff.items() if v}


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    client_id: Optional[str] = None,
    actor_role: Optional[UserRole] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Write an audit entry for a template or letter event.

    When both states are given the diff is stored in metadata. Audit failures
    are logged and never propagate to the caller; an empty id is returned.
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata) if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            client_id=client_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            ip_address=ip_address,
        )

        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} {resource_type or ''} {resource_id or ''}".rstrip())
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log for {action}: {e}")
        return ""


async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Audit trail of one template or letter, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"resource_type": resource_type, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for {resource_type} {resource_id}: {e}")
        return []
