"""
API routes for payouts, payment methods, view tracking and analytics.

Authentication happens upstream; the caller's identity arrives in the
X-User-ID header. Operator routes additionally require the shared X-Admin-Key.
Engine errors are turned into JSON responses by the
exception handler in main.
"""
import dataclasses
import hmac
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.core import analytics
from payout_engine.core.exceptions import ForbiddenError
from payout_engine.core.ledger import ViewTrackingLedger
from payout_engine.core.metrics_gateway import MetricsGateway
from payout_engine.core.orchestrator import TransactionOrchestrator
from payout_engine.core.reconciliation import ReconciliationEngine
from payout_engine.database.connection import get_db
from payout_engine.database.models import Rail, TransactionStatus
from payout_engine.integrations.webhook_handler import WebhookHandler
from payout_engine.monitoring.health import HealthCheck
from payout_engine.workers.view_sync_worker import sync_views

from .schemas import (
    AddPaymentMethodRequest,
    AddPaymentMethodResponse,
    AdminPayoutRequest,
    ContentLinkResponse,
    CreatePayoutRequest,
    EarningsTrendResponse,
    FeePreviewResponse,
    FetchViewsRequest,
    HealthCheckResponse,
    PaymentMethodResponse,
    PayoutSummaryResponse,
    ReconciliationResponse,
    RecordViewsRequest,
    RefundRequest,
    RegisterLinkRequest,
    SelectLinkRequest,
    SyncSummaryResponse,
    SyncViewsRequest,
    TransactionResponse,
    VerifyPaymentMethodRequest,
    ViewFetchResponse,
    ViewTrackingRecordResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Engine components shared by the routes, built once at startup."""

    orchestrator: TransactionOrchestrator
    gateway: MetricsGateway
    webhooks: WebhookHandler
    reconciliation: ReconciliationEngine
    health: HealthCheck

    @property
    def ledger(self) -> ViewTrackingLedger:
        return self.orchestrator.ledger


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: UUID = Header(..., alias="X-User-ID")) -> UUID:
    return x_user_id


def require_operator(
    request: Request, x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")
) -> None:
    """Reject callers without the operator key; an unset key locks the routes."""
    expected = request.app.state.settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise ForbiddenError("Operator credentials required")


payment_method_router = APIRouter(prefix="/payment-methods", tags=["payment-methods"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
view_tracking_router = APIRouter(prefix="/view-tracking", tags=["view-tracking"])
analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_operator)]
)
monitoring_router = APIRouter(tags=["monitoring"])


@payment_method_router.post(
    "",
    response_model=AddPaymentMethodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a payment method",
    description="Register an ACH, PayPal or crypto payout destination",
)
async def add_payment_method(
    request: AddPaymentMethodRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    result = await services.orchestrator.registry.add(
        user_id, request.type, request.details, db, is_default=request.is_default
    )
    return {"method": result.method, "link_token": result.link_token}


@payment_method_router.get("", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    include_inactive: bool = False,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.registry.list_methods(
        user_id, db, include_inactive=include_inactive
    )


@payment_method_router.post(
    "/{method_id}/verify",
    response_model=PaymentMethodResponse,
    summary="Verify a bank account",
    description="Complete ACH verification with a Plaid Link public token",
)
async def verify_payment_method(
    method_id: UUID,
    request: VerifyPaymentMethodRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.registry.verify(
        method_id, request.public_token, db, owner_id=user_id
    )


@payment_method_router.post("/{method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    method_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.registry.set_default(method_id, user_id, db)


@payment_method_router.delete("/{method_id}", response_model=PaymentMethodResponse)
async def deactivate_payment_method(
    method_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.registry.deactivate(method_id, user_id, db)


@payout_router.post(
    "",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Cash out an approved payout",
    description=(
        "Disburse the approved payout of one of the caller's view-tracking records. "
        "Rail failures come back as a failed transaction, not an error."
    ),
)
async def create_payout(
    request: CreatePayoutRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    logger.info(
        "api_create_payout_request",
        owner_id=str(user_id),
        source_record_id=str(request.source_record_id),
    )
    return await services.orchestrator.initiate_for_record(
        request.source_record_id,
        request.payment_method_id,
        db,
        owner_id=user_id,
        amount=request.amount,
    )


@payout_router.get("/fees", response_model=FeePreviewResponse, summary="Preview payout fees")
async def preview_fees(
    amount: Decimal = Query(..., gt=0),
    rail: Rail = Query(...),
    services: Services = Depends(get_services),
) -> Any:
    return dataclasses.asdict(services.orchestrator.fee_schedule.compute_fees(amount, rail))


@payout_router.get("", response_model=List[TransactionResponse])
async def list_payouts(
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    transaction_type: Optional[str] = Query(default=None, alias="type"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.list_transactions(
        user_id,
        db,
        status=status_filter,
        transaction_type=transaction_type,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )


@payout_router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_payout(
    transaction_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.get_transaction(transaction_id, db, owner_id=user_id)


@view_tracking_router.post(
    "/links",
    response_model=ContentLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Track a content link",
)
async def register_link(
    request: RegisterLinkRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.register_link(
        request.campaign_id, user_id, request.content_url, db, is_selected=request.is_selected
    )


@view_tracking_router.post(
    "/campaigns/{campaign_id}/views",
    response_model=ViewTrackingRecordResponse,
    summary="Record a view total",
    description="Record the current view total for a content link in one of the caller's campaigns",
)
async def record_views(
    campaign_id: UUID,
    request: RecordViewsRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.record_views(
        campaign_id,
        request.content_link_id,
        request.platform,
        request.views,
        db,
        creator_id=request.creator_id,
        content_url=request.content_url,
        brand_id=user_id,
    )


@view_tracking_router.post("/links/{link_id}/selection", response_model=ContentLinkResponse)
async def select_link(
    link_id: UUID,
    request: SelectLinkRequest,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.select_link(link_id, request.selected, db, brand_id=user_id)


@view_tracking_router.get(
    "/campaigns/{campaign_id}/links", response_model=List[ContentLinkResponse]
)
async def list_links(
    campaign_id: UUID,
    creator_id: Optional[UUID] = None,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.list_links(campaign_id, db, creator_id=creator_id)


@view_tracking_router.get(
    "/campaigns/{campaign_id}/showcase", response_model=List[ContentLinkResponse]
)
async def list_showcase_links(
    campaign_id: UUID,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.list_showcase_links(campaign_id, db)


@view_tracking_router.get(
    "/campaigns/{campaign_id}/records", response_model=List[ViewTrackingRecordResponse]
)
async def list_records(
    campaign_id: UUID,
    creator_id: Optional[UUID] = None,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.list_records(campaign_id, db, creator_id=creator_id)


@view_tracking_router.post(
    "/records/{record_id}/approve", response_model=ViewTrackingRecordResponse
)
async def approve_payout(
    record_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.approve_payout(record_id, user_id, db)


@view_tracking_router.post("/records/{record_id}/reject", response_model=ViewTrackingRecordResponse)
async def reject_payout(
    record_id: UUID,
    user_id: UUID = Depends(current_user),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.ledger.reject_payout(record_id, user_id, db)


@view_tracking_router.post(
    "/fetch",
    response_model=ViewFetchResponse,
    summary="Fetch current views for a URL",
    description="Validate a content URL and fetch its stats without recording them",
)
async def fetch_views(
    request: FetchViewsRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.gateway.fetch_views(request.url)
    return dataclasses.asdict(result)


@view_tracking_router.post(
    "/sync",
    response_model=SyncSummaryResponse,
    summary="Run view sync",
    dependencies=[Depends(require_operator)],
)
async def run_view_sync(
    request: SyncViewsRequest,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    return await sync_views(
        services.ledger, services.gateway, db, campaign_id=request.campaign_id, force=request.force
    )


@analytics_router.get("/summary", response_model=PayoutSummaryResponse)
async def payout_summary(
    user_id: UUID = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    summary = await analytics.payout_summary(user_id, db)
    return summary.as_dict()


@analytics_router.get("/trend", response_model=EarningsTrendResponse)
async def earnings_trend(
    period: str = Query(default="month", pattern="^(month|quarter|year)$"),
    user_id: UUID = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    data = await analytics.earnings_trend(user_id, db, period=period)
    return {"period": period, "data": data}


@webhook_router.post(
    "/paypal",
    response_model=WebhookResponse,
    summary="PayPal webhook endpoint",
    description="Handle PayPal payout batch and item events",
)
async def paypal_webhook(
    request: Request,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    body = await request.body()
    return await services.webhooks.handle_paypal(request.headers, body, db)


@webhook_router.post(
    "/coinbase",
    response_model=WebhookResponse,
    summary="Coinbase Commerce webhook endpoint",
    description="Handle Coinbase Commerce charge events",
)
async def coinbase_webhook(
    request: Request,
    signature: str = Header(..., alias="X-CC-Webhook-Signature"),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    body = await request.body()
    return await services.webhooks.handle_coinbase(body, signature, db)


@admin_router.post(
    "/payouts",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a manual payout",
    description="Disburse an operator-chosen amount to a creator's payment method",
)
async def create_manual_payout(
    request: AdminPayoutRequest,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    logger.info(
        "api_manual_payout_request",
        owner_id=str(request.owner_id),
        amount=str(request.amount),
    )
    return await services.orchestrator.initiate(
        request.owner_id,
        request.payment_method_id,
        request.amount,
        db,
        source_record_id=request.source_record_id,
        campaign_id=request.campaign_id,
    )


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Poll the rails for every processing payout now",
)
async def run_reconciliation(
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    return await services.reconciliation.reconcile(db)


@admin_router.post(
    "/payouts/{transaction_id}/refund",
    response_model=TransactionResponse,
    summary="Mark a completed payout refunded",
)
async def refund_payout(
    transaction_id: UUID,
    request: RefundRequest,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await services.orchestrator.refund(transaction_id, db, reason=request.reason)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
