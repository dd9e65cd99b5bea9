"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from payout_engine.database.models import Platform, Rail


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AddPaymentMethodRequest(BaseModel):
    """Request schema for registering a payout destination."""

    type: Rail = Field(..., description="Payment rail (ach, paypal, crypto)")
    details: Dict[str, Any] = Field(..., description="Rail-specific destination fields")
    is_default: bool = Field(default=False, description="Make this the default method")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "ach",
                    "details": {
                        "account_holder": "Jane Creator",
                        "email": "jane@example.com",
                        "routing_number": "110000000",
                        "account_number": "000123456789",
                        "account_type": "checking",
                    },
                    "is_default": True,
                },
                {"type": "paypal", "details": {"email": "jane@example.com"}},
                {"type": "crypto", "details": {"currency": "ETH", "address": "0x" + "a" * 40}},
            ]
        }
    }


class PaymentMethodResponse(ORMModel):
    id: UUID
    owner_id: UUID
    type: str
    details: Dict[str, Any]
    status: str
    is_active: bool
    is_default: bool
    created_at: datetime


class AddPaymentMethodResponse(BaseModel):
    method: PaymentMethodResponse
    link_token: Optional[str] = Field(
        default=None, description="Plaid Link token for ACH verification"
    )


class VerifyPaymentMethodRequest(BaseModel):
    public_token: str = Field(..., min_length=1, description="Plaid Link public token")


class CreatePayoutRequest(BaseModel):
    """A creator cashing out an approved view-tracking payout."""

    payment_method_id: UUID = Field(..., description="Destination payment method")
    source_record_id: UUID = Field(..., description="Approved view-tracking record being paid")
    amount: Optional[Decimal] = Field(
        default=None, gt=0, decimal_places=2, description="Must equal the approved payout if given"
    )


class AdminPayoutRequest(BaseModel):
    """Operator-initiated payout of an arbitrary amount."""

    owner_id: UUID = Field(..., description="Creator receiving the payout")
    payment_method_id: UUID = Field(..., description="Destination payment method")
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Gross amount in USD")
    source_record_id: Optional[UUID] = Field(
        default=None, description="Record this pays for; at most one live payout per record"
    )
    campaign_id: Optional[UUID] = Field(default=None, description="Campaign being paid out")


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Refund reason")


class TransactionResponse(ORMModel):
    """Response schema for a payout transaction."""

    id: UUID
    owner_id: UUID
    source_record_id: Optional[UUID] = None
    campaign_id: Optional[UUID] = None
    payment_method_id: UUID
    payment_method: str
    transaction_type: str
    amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    fee: Decimal
    net_amount: Decimal
    currency: str
    status: str
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class FeePreviewResponse(BaseModel):
    gross: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal


class RegisterLinkRequest(BaseModel):
    campaign_id: UUID
    content_url: str = Field(..., min_length=1)
    is_selected: bool = False


class RecordViewsRequest(BaseModel):
    """View total reported by the campaign's brand for a content link."""

    content_link_id: UUID
    creator_id: Optional[UUID] = Field(default=None, description="Required when the link is new")
    platform: Platform
    views: int = Field(..., ge=0, description="Current total, not a delta")
    content_url: Optional[str] = None


class SelectLinkRequest(BaseModel):
    selected: bool


class ContentLinkResponse(ORMModel):
    id: UUID
    campaign_id: UUID
    creator_id: UUID
    platform: str
    content_url: str
    post_id: Optional[str] = None
    is_selected: bool
    views_tracked: int
    last_view_check: Optional[datetime] = None
    link_metadata: Optional[Dict[str, Any]] = None


class ViewTrackingRecordResponse(ORMModel):
    id: UUID
    campaign_id: UUID
    creator_id: UUID
    views_observed: int
    views_tracked: int
    instagram_views: int
    tiktok_views: int
    payout_calculated: Decimal
    payout_status: str
    last_checked_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None


class FetchViewsRequest(BaseModel):
    url: str = Field(..., min_length=1, description="Instagram or TikTok content URL")


class ViewFetchResponse(BaseModel):
    url: str
    ok: bool
    platform: Optional[Platform] = None
    post_id: Optional[str] = None
    views: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    title: Optional[str] = None
    author: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False


class SyncViewsRequest(BaseModel):
    campaign_id: Optional[UUID] = None
    force: bool = False


class SyncSummaryResponse(BaseModel):
    checked: int
    updated: int
    metadata_only: int
    failed: int
    rate_limited: int


class RailBreakdownResponse(BaseModel):
    count: int
    amount: Decimal


class PayoutSummaryResponse(BaseModel):
    total_earnings: Decimal
    this_month_earnings: Decimal
    last_month_earnings: Decimal
    pending_payouts: Decimal
    completed_payouts: Decimal
    average_payout_amount: Decimal
    monthly_growth: Decimal
    rails: Dict[str, RailBreakdownResponse]


class EarningsTrendPoint(BaseModel):
    period: str
    revenue: Decimal
    campaigns: int


class EarningsTrendResponse(BaseModel):
    period: str
    data: List[EarningsTrendPoint]


class ReconciliationResponse(BaseModel):
    checked: int
    completed: int
    failed: int
    pending: int
    errors: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Provider event ID")
    message: Optional[str] = Field(default=None, description="Status message")
