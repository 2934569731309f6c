import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activity.models import ActivityLog
from app.core.pagination import PaginationParams, paginate


def log_activity(
    db: AsyncSession,
    user_id: uuid.UUID | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    details: dict | None = None,
) -> ActivityLog:
    """Stage an audit entry in the caller's transaction.

    The entry is committed together with the change it describes, so a
    rolled-back change leaves no trail.
    """
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
    )
    db.add(entry)
    return entry


async def list_activity(
    db: AsyncSession,
    resource_type: str,
    resource_id: str,
    pagination: PaginationParams,
) -> tuple[list[ActivityLog], int]:
    """Return the paginated audit trail of one resource, newest first."""
    query = (
        select(ActivityLog)
        .where(
            ActivityLog.resource_type == resource_type,
            ActivityLog.resource_id == resource_id,
        )
        .order_by(ActivityLog.created_at.desc())
    )
    return await paginate(db, query, pagination)
