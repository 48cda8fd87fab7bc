"""
Audit logging service - append-only trail of ledger mutations.
"""
from billing_ledger.models.audit_log import AuditLog, AuditAction
from datetime import datetime
import json
import logging

logger = logging.getLogger(__name__)


def append_entry(
    session,
    tenant_id: int,
    user_id: int,
    action: AuditAction,
    resource_type: str = None,
    resource_id: int = None,
    details: dict = None
) -> AuditLog:
    """
    Stage an audit entry in the current transaction.

    The entry commits or rolls back together with the mutation it describes.

    Args:
        session: Database session (caller owns the transaction)
        tenant_id: Tenant ID
        user_id: Acting user (None for system reconciliation)
        action: AuditAction enum value
        resource_type: Type of resource affected (e.g., 'payment', 'customer')
        resource_id: ID of the affected resource
        details: Dict with additional details (will be JSON encoded)

    Returns:
        The staged AuditLog row
    """
    # Serialize details to JSON
    details_json = None
    if details:
        try:
            details_json = json.dumps(details, default=str, sort_keys=True)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize audit details: {e}")
            details_json = str(details)

    audit_entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details_json,
        created_at=datetime.utcnow()
    )

    session.add(audit_entry)
    # Note: Caller is responsible for committing the session

    logger.debug(f"Audit log staged: {action.value} by user {user_id} on {resource_type} {resource_id}")
    return audit_entry


def get_audit_logs(
    session,
    tenant_id: int,
    limit: int = 100,
    offset: int = 0,
    action_filter: AuditAction = None,
    user_id_filter: int = None,
    resource_type_filter: str = None,
    resource_id_filter: int = None
):
    """
    Retrieve audit logs for a tenant with optional filters.

    Args:
        session: Database session
        tenant_id: Tenant ID
        limit: Max number of results
        offset: Pagination offset
        action_filter: Filter by specific action
        user_id_filter: Filter by user
        resource_type_filter: Filter by resource type
        resource_id_filter: Filter by resource id

    Returns:
        List of AuditLog objects, newest first
    """
    query = session.query(AuditLog).filter(
        AuditLog.tenant_id == tenant_id
    )

    if action_filter:
        query = query.filter(AuditLog.action == action_filter)

    if user_id_filter:
        query = query.filter(AuditLog.user_id == user_id_filter)

    if resource_type_filter:
        query = query.filter(AuditLog.resource_type == resource_type_filter)

    if resource_id_filter is not None:
        query = query.filter(AuditLog.resource_id == resource_id_filter)

    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def decode_details(entry: AuditLog) -> dict:
    """Details payload of an entry as a dict ({} when empty)."""
    if not entry.details:
        return {}
    try:
        return json.loads(entry.details)
    except ValueError:
        return {'raw': entry.details}
