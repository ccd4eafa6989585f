import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from keybase.database import get_db
from keybase.models import User, utcnow
from keybase.schemas import UserRead
from keybase.services.auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=UserRead)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/logout")
async def logout(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    # Dropping the stored Pi token invalidates every session token for this user
    current_user.auth_token = None
    current_user.updated_at = utcnow()
    await db.commit()
    logger.info("User %s logged out", current_user.id)
    return {"success": True, "message": "Logout successful"}
