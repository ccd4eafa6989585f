from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys the Pi frontend speaks."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- User ---
class UserRead(CamelModel):
    id: int
    external_id: str
    display_name: Optional[str] = None
    role: str
    wallet_address: Optional[str] = None
    last_authenticated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class UserSummary(CamelModel):
    id: int
    external_id: str
    display_name: Optional[str] = None


# --- Tokens ---
class TokenData(BaseModel):
    sub: str | None = None  # user id as string


# --- Pi authentication ---
class PiVerifyRequest(CamelModel):
    access_token: str = Field(..., min_length=1)


class PiVerifyResponse(CamelModel):
    success: bool = True
    user: UserRead
    access_token: str
    token_type: str = "bearer"


# --- Pi payments ---
class DonationData(CamelModel):
    """Attribution data carried through a payment attempt."""

    user_id: str = Field(..., min_length=1, description="Pi uid of the donor")
    amount: float = Field(..., gt=0)
    memo: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ApprovePaymentRequest(CamelModel):
    payment_id: str = Field(..., min_length=1)


class CompletePaymentRequest(CamelModel):
    payment_id: str = Field(..., min_length=1)
    txid: str = Field(..., min_length=1)
    donation_data: Optional[DonationData] = None


class CancelPaymentRequest(CamelModel):
    payment_id: str = Field(..., min_length=1)


class PaymentActionResponse(CamelModel):
    success: bool
    message: str
    payment_id: Optional[str] = None
    already_completed: Optional[bool] = None
    cancelled: Optional[bool] = None


class IncompleteSweepResponse(CamelModel):
    success: bool = True
    found: int
    cancelled: List[str] = []
    failed: List[str] = []


# --- Donations ---
class DonationRead(CamelModel):
    id: int
    amount: float
    gateway_payment_id: str
    transaction_id: str
    status: str
    memo: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias="payment_metadata",
        serialization_alias="metadata",
    )
    created_at: datetime
    user: Optional[UserSummary] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DonationListResponse(BaseModel):
    success: bool = True
    donations: List[DonationRead]
    pagination: Pagination


# --- Seller applications ---
class SellerApplicationCreate(CamelModel):
    business_name: str = Field(..., min_length=1)
    business_type: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None


class SellerApplicationReview(CamelModel):
    status: Literal["approved", "rejected"]
    notes: Optional[str] = None


class SellerApplicationRead(CamelModel):
    id: int
    user_id: int
    business_name: str
    business_type: str
    location: str
    description: str
    email: str
    phone: Optional[str] = None
    status: str
    notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    user: Optional[UserSummary] = None


class SellerApplicationListResponse(BaseModel):
    success: bool = True
    applications: List[SellerApplicationRead]
    pagination: Pagination
