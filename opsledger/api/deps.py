from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from opsledger.database import get_db


logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> uuid.UUID:
    """
    Dependency returning the acting user's id.

    Authentication happens upstream; callers pass the authenticated user id
    in the X-User-Id header and it is recorded on every row they create.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )

    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        logger.warning(f"Invalid X-User-Id header: {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header",
        )


# Type aliases for cleaner dependency injection
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
DB = Annotated[AsyncSession, Depends(get_db)]
