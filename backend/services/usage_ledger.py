"""Usage Quota Ledger.

Two separate concerns:

- ``record_usage`` appends a row to ``usage_events`` for every billable call
  (search, details, serper, AI tokens). Best-effort: a failed write is logged
  and never fails the action that triggered it.
- Lead quota: ``check_quota`` before a quota-gated action, then
  ``increment_leads_used`` (atomic $inc) once the action completes. Two
  concurrent actions can both pass the check and overshoot the limit by one;
  that is accepted rather than serializing every usage write.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from database import database
from models import UsageEvent, UsageEventType, WorkspaceUsage, WorkspaceBilling
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


class QuotaExceededError(Exception):
    """The workspace has used its whole lead quota for the period."""

    code = LIMIT_EXCEEDED

    def __init__(self, workspace_id: str, limit: int, used: int):
        self.workspace_id = workspace_id
        self.limit = limit
        self.used = used
        super().__init__(f"Lead limit reached for workspace {workspace_id}: {used}/{limit}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "Limit reached", "code": self.code, "limit": self.limit, "used": self.used}


# ============================================================================
# USAGE RECORDING
# ============================================================================

async def record_usage(
    workspace_id: str,
    usage_type: UsageEventType,
    quantity: int = 1,
    metadata: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    """Append a usage row. Returns the event id, or None if the write failed."""
    try:
        event = UsageEvent(
            workspace_id=workspace_id,
            type=usage_type,
            quantity=quantity,
            metadata=metadata,
        )
        doc = event.model_dump()
        doc["type"] = event.type.value
        db = database.get_db()
        await db.usage_events.insert_one(doc)
        return event.event_id
    except Exception as e:
        # Never fail the billable action because the ledger write failed
        logger.warning(f"Failed to record usage {usage_type} for workspace {workspace_id}: {e}")
        return None


async def record_ai_tokens(workspace_id: str, input_tokens: int, output_tokens: int) -> Optional[str]:
    return await record_usage(
        workspace_id,
        UsageEventType.AI_TOKENS,
        quantity=1,
        metadata={"input_tokens": input_tokens, "output_tokens": output_tokens},
    )


# ============================================================================
# LEAD QUOTA
# ============================================================================

def check_quota(workspace: WorkspaceBilling) -> None:
    """Raise QuotaExceededError when no leads are left. No writes."""
    if workspace.leads_used >= workspace.leads_limit:
        raise QuotaExceededError(workspace.workspace_id, workspace.leads_limit, workspace.leads_used)


async def increment_leads_used(workspace_id: str, amount: int = 1) -> None:
    """Atomically add to the lead counter."""
    db = database.get_db()
    await db.workspaces.update_one(
        {"workspace_id": workspace_id},
        {"$inc": {"leads_used": amount}},
    )


async def run_quota_gated(workspace_id: str, action: Callable[[], Awaitable[T]]) -> T:
    """Run a quota-gated action: pre-check, run, then count one lead.

    Nothing is counted when the action raises.
    """
    from services.workspace_billing import get_workspace_billing

    workspace = await get_workspace_billing(workspace_id)
    check_quota(workspace)
    result = await action()
    await increment_leads_used(workspace_id)
    return result


# ============================================================================
# AGGREGATION
# ============================================================================

_TYPE_TO_FIELD = {
    UsageEventType.GOOGLE_PLACES_SEARCH.value: "google_search_count",
    UsageEventType.GOOGLE_PLACES_DETAILS.value: "details_count",
    UsageEventType.SERPER_REQUEST.value: "serper_requests",
}


async def get_workspace_usage(
    workspace_ids: Optional[List[str]] = None,
    since: Optional[datetime] = None
) -> Dict[str, WorkspaceUsage]:
    """Aggregate the ledger per workspace.

    Counts sum ``quantity`` per type; AI tokens are summed from
    ``metadata.input_tokens`` / ``metadata.output_tokens``.
    """
    match: Dict[str, Any] = {}
    if workspace_ids is not None:
        match["workspace_id"] = {"$in": list(workspace_ids)}
    if since is not None:
        match["created_at"] = {"$gte": since}

    db = database.get_db()
    rows = await db.usage_events.aggregate([
        {"$match": match},
        {
            "$group": {
                "_id": {"workspace_id": "$workspace_id", "type": "$type"},
                "quantity": {"$sum": "$quantity"},
                "input_tokens": {"$sum": "$metadata.input_tokens"},
                "output_tokens": {"$sum": "$metadata.output_tokens"},
            }
        },
    ]).to_list(None)

    usage: Dict[str, WorkspaceUsage] = {}
    for workspace_id in workspace_ids or []:
        usage[workspace_id] = WorkspaceUsage(workspace_id=workspace_id)

    for row in rows:
        workspace_id = row["_id"]["workspace_id"]
        usage_type = row["_id"]["type"]
        entry = usage.setdefault(workspace_id, WorkspaceUsage(workspace_id=workspace_id))
        if usage_type == UsageEventType.AI_TOKENS.value:
            entry.ai_input_tokens += int(row.get("input_tokens") or 0)
            entry.ai_output_tokens += int(row.get("output_tokens") or 0)
        elif usage_type in _TYPE_TO_FIELD:
            field = _TYPE_TO_FIELD[usage_type]
            setattr(entry, field, getattr(entry, field) + int(row.get("quantity") or 0))

    return usage
