"""Pydantic request models for the Promptly Printed API.

FastAPI uses these for request validation and the OpenAPI schema.  Response
bodies are plain dicts built from the core dataclasses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from promptly.core.database import as_utc
from promptly.core.orders import OrderStatus, ShippingMethod


class CompetitionCreateRequest(BaseModel):
    """Request body for ``POST /api/competitions`` (admin seed)."""

    theme: str = Field(..., min_length=1, description="Competition theme.")
    start_date: datetime = Field(..., description="When the competition opens.")
    end_date: datetime = Field(..., description="When the competition closes.")
    theme_icon: str | None = Field(default=None, description="Emoji or icon for the theme.")
    prize: str | None = Field(default=None, description="Prize description.")
    funnel_tag: str | None = Field(
        default=None,
        description="Marketing funnel tag; also the referral code prefix.",
    )
    is_active: bool = Field(default=True, description="Whether the competition is live.")
    id: str | None = Field(default=None, description="Explicit id; generated when omitted.")

    @model_validator(mode="after")
    def _check_dates(self) -> CompetitionCreateRequest:
        if as_utc(self.end_date) <= as_utc(self.start_date):
            raise ValueError("end_date must be after start_date")
        return self


class SubmitEntryRequest(BaseModel):
    design_id: int = Field(..., ge=1, description="Design to enter.")


class VerifyPurchaseRequest(BaseModel):
    """Request body for ``POST /api/competition/verify-purchase``."""

    order_id: int = Field(..., ge=1, description="Completed order to link.")
    design_id: int | None = Field(
        default=None,
        ge=1,
        description="Design to enter when the user has no entry yet.",
    )
    competition_id: str | None = Field(
        default=None,
        description="Competition to use; defaults to the latest active one.",
    )


class DeductCreditsRequest(BaseModel):
    model: str = Field(..., min_length=1, description="AI model being used (sets the cost).")
    reason: str | None = Field(default=None, description="Audit text for the transaction.")
    metadata: dict[str, Any] | None = Field(default=None, description="Extra audit metadata.")


class TshirtBonusRequest(BaseModel):
    order_id: int = Field(..., ge=1, description="Order containing the T-shirts.")
    tshirt_count: int = Field(default=1, ge=1, description="Number of T-shirts purchased.")


class AddressRequest(BaseModel):
    """New recipient details for ``POST /api/orders/{id}/update-address``.

    The postal code must match the order's current one.
    """

    name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: str | None = None
    city: str = Field(..., min_length=1)
    state: str | None = None
    postal_code: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=2)
    email: str | None = None
    phone_number: str | None = None


class UpdateShippingRequest(BaseModel):
    shipping_method: ShippingMethod = Field(
        ..., description="Target method; must be cheaper than the current one."
    )


class MetadataRequest(BaseModel):
    metadata: dict[str, Any] = Field(..., description="Key/values to push to Prodigi.")


class StatusUpdateRequest(BaseModel):
    status: OrderStatus = Field(..., description="New local order status.")


class OrderLookupRequest(BaseModel):
    order_id: int = Field(..., ge=1)
    email: str = Field(..., min_length=3, description="Recipient email on the order.")


class PrintImageRequest(BaseModel):
    """Request body for ``POST /api/print-image``.

    Attributes:
        image_data: Base64 image, optionally as a ``data:image/...;base64,``
            URL.
        product_code: Prodigi SKU selecting the print area.
    """

    image_data: str = Field(..., min_length=1, description="Base64 or data URL image.")
    product_code: str | None = Field(default=None, description="Prodigi SKU.")


class DesignCreateRequest(BaseModel):
    """Request body for ``POST /api/designs``."""

    name: str = Field(..., min_length=1, description="Design display name.")
    image_url: str | None = Field(default=None, description="Rendered artwork URL.")
    campaign_id: str | None = Field(
        default=None,
        description="Campaign the design was made for; unlocks seasonal badges.",
    )


class CompleteReferralRequest(BaseModel):
    order_id: int = Field(..., ge=1, description="The buyer's fulfilled order.")
    referral_code: str | None = Field(
        default=None,
        description="Code used at checkout; read from the order metadata when omitted.",
    )


class SocialFollowRequest(BaseModel):
    platform: str = Field(..., min_length=1, description="instagram, facebook, twitter or tiktok.")
    username: str = Field(..., min_length=1, description="Handle on that platform.")
    screenshot_url: str | None = Field(default=None, description="Proof of the follow.")


class SocialFollowReviewRequest(BaseModel):
    verification_id: int = Field(..., ge=1, description="Pending claim to review.")
    approved: bool = Field(..., description="Award the points (true) or discard the claim.")
    notes: str | None = Field(default=None, description="Reviewer notes.")


class GenerationAuthorizeRequest(BaseModel):
    """Pre-check for a generation.  Anonymous callers must pass ``session_id``."""

    model: str = Field(..., min_length=1, description="AI model to be used.")
    session_id: str | None = Field(default=None, description="Guest session id.")


class GenerationRecordRequest(BaseModel):
    """Request body for ``POST /api/generations``.

    Attributes:
        status: ``COMPLETED`` charges the caller; ``FAILED`` is recorded
            without a charge.
    """

    prompt: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    status: Literal["COMPLETED", "FAILED"] = Field(default="COMPLETED")
    session_id: str | None = Field(default=None, description="Guest session id.")
    image_url: str | None = None
    print_ready_url: str | None = None
    error_message: str | None = None
    generation_time_ms: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] | None = None


class CreditCheckoutRequest(BaseModel):
    pack_id: str = Field(..., min_length=1, description="Credit pack to buy.")
