import logging
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from keybase.models import SellerApplication, User, ROLE_ADMIN, ROLE_SELLER, utcnow
from keybase.schemas import SellerApplicationCreate, SellerApplicationReview

logger = logging.getLogger(__name__)


async def get_application(db: AsyncSession, application_id: int) -> Optional[SellerApplication]:
    res = await db.execute(
        select(SellerApplication)
        .options(selectinload(SellerApplication.user))
        .where(SellerApplication.id == application_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def submit_application(db: AsyncSession, user: User, payload: SellerApplicationCreate) -> SellerApplication:
    res = await db.execute(select(SellerApplication.id).where(SellerApplication.user_id == user.id))
    if res.first() is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You already have a pending application.")

    application = SellerApplication(
        user_id=user.id,
        business_name=payload.business_name,
        business_type=payload.business_type,
        location=payload.location,
        description=payload.description,
        email=str(payload.email),
        phone=payload.phone,
        status="pending",
    )
    db.add(application)
    await db.commit()
    logger.info("Seller application %s submitted by user %s", application.id, user.id)
    return await get_application(db, application.id)


async def list_applications(
    db: AsyncSession, *, page: int = 1, limit: int = 10, status_filter: str | None = None
) -> tuple[list[SellerApplication], int]:
    stmt = select(SellerApplication).options(selectinload(SellerApplication.user))
    count_stmt = select(func.count(SellerApplication.id))
    if status_filter:
        stmt = stmt.where(SellerApplication.status == status_filter)
        count_stmt = count_stmt.where(SellerApplication.status == status_filter)
    stmt = stmt.order_by(SellerApplication.created_at.desc(), SellerApplication.id.desc())
    stmt = stmt.offset((page - 1) * limit).limit(limit)

    applications = list((await db.execute(stmt)).scalars().all())
    total = (await db.execute(count_stmt)).scalar_one()
    return applications, total


async def review_application(
    db: AsyncSession, application_id: int, review: SellerApplicationReview, reviewer: User
) -> SellerApplication:
    """Approve or reject an application; approval promotes a reader to seller."""
    application = await get_application(db, application_id)
    if application is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Application not found.")

    application.status = review.status
    application.notes = review.notes
    application.reviewed_by = reviewer.external_id
    application.reviewed_at = utcnow()

    if review.status == "approved":
        applicant = application.user
        # Admins keep their role
        if applicant.role != ROLE_ADMIN:
            applicant.role = ROLE_SELLER
            applicant.updated_at = utcnow()
        else:
            logger.info("User %s is already an admin, keeping admin role", applicant.id)

    await db.commit()
    logger.info("Seller application %s %s by %s", application.id, review.status, reviewer.external_id)
    return await get_application(db, application_id)
