from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.database import get_db, set_tenant_context
from allocator.middleware.auth import get_current_user


async def get_db_with_tenant(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AsyncSession:
    """
    Session scoped to the caller's tenant.

    Sets app.current_tenant_id for the row-level security policies and tags
    every log line of the request with the tenant and acting user.
    """
    structlog.contextvars.bind_contextvars(
        tenant_id=current_user["tenant_id"], user_id=current_user["user_id"]
    )
    await set_tenant_context(db, current_user["tenant_id"])
    return db
