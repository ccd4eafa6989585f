from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from keybase.database import get_db
from keybase.models import User
from keybase.schemas import (
    Pagination,
    SellerApplicationCreate,
    SellerApplicationListResponse,
    SellerApplicationRead,
    SellerApplicationReview,
)
from keybase.services import sellers
from keybase.services.auth import get_current_user, require_admin
from keybase.services.payments import page_count

router = APIRouter(prefix="/seller-applications", tags=["seller-applications"])


@router.post("", response_model=SellerApplicationRead, status_code=201)
async def create_application(
    payload: SellerApplicationCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await sellers.submit_application(db, current_user, payload)


@router.get("", response_model=SellerApplicationListResponse)
async def get_applications(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    applications, total = await sellers.list_applications(db, page=page, limit=limit, status_filter=status)
    return SellerApplicationListResponse(
        applications=[SellerApplicationRead.model_validate(a) for a in applications],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/{application_id}", response_model=SellerApplicationRead)
async def get_application(
    application_id: int,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    application = await sellers.get_application(db, application_id)
    if application is None:
        raise HTTPException(status_code=404, detail="Application not found.")
    return application


@router.put("/{application_id}", response_model=SellerApplicationRead)
async def review_application(
    application_id: int,
    review: SellerApplicationReview,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return await sellers.review_application(db, application_id, review, admin)
