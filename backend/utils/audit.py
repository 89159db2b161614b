from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Return the fields whose value differs between two billing states.

    Output is ``{field: {"from": old, "to": new}}``; unchanged fields are omitted.
    """
    before = before or {}
    after = after or {}
    changed = {}
    for key in set(before.keys()) | set(after.keys()):
        if before.get(key) != after.get(key):
            changed[key] = {"from": before.get(key), "to": after.get(key)}
    return changed

async def create_audit_log(
    action: AuditAction,
    workspace_id: Optional[str] = None,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry. Never raises; returns "" on failure.

    Args:
        action: The audit action type
        workspace_id: Workspace whose billing state changed
        actor_role: Role of the user performing the action (None for provider/cron)
        actor_id: ID of the user performing the action
        before_state: Billing fields before the change
        after_state: Billing fields after the change
        metadata: Additional metadata (event ids, amounts, provider names)
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata) if metadata else {}
        if before_state is not None and after_state is not None:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            workspace_id=workspace_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )

        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} workspace={workspace_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_logs_for_workspace(
    workspace_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get billing audit history for a workspace, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"workspace_id": workspace_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for workspace: {e}")
        return []
