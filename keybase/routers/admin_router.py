from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from keybase.database import get_db
from keybase.models import User
from keybase.schemas import DonationListResponse, DonationRead, Pagination
from keybase.services.auth import require_admin
from keybase.services.payments import list_donations, page_count

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/donations", response_model=DonationListResponse)
async def get_donations(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    donations, total = await list_donations(db, page=page, limit=limit, status=status)
    return DonationListResponse(
        donations=[DonationRead.model_validate(d) for d in donations],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )
