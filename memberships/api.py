"""
HTTP entry points.

- POST /webhooks/{gateway_id}: asynchronous payment confirmation
- POST /subscriptions: subscribe a member to a plan
- POST /subscriptions/{subscription_id}/purchase: pay the open invoice
- GET  /access: access decision for one content item

SECURITY:
- Webhook payloads are parsed by their gateway, which verifies signatures
- Errors use the standard envelope; stack traces are never returned
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cache import AccessSnapshotCache
from .config import Settings, load_settings
from .errors import AppError, ErrorHandlerMiddleware, ValidationError, get_correlation_id
from .events import EventDispatcher
from .gateways import FreeGateway, GatewayRegistry, ManualGateway, PaymentDetails, StripeGateway
from .invoice import CouponDiscount, FlatTax
from .lifecycle import LifecycleController, PurchaseResult
from .loader import MembershipLoader
from .rules import RuleType
from .service import AccessService
from .storage import create_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["memberships"])


# Request/Response Models

class SubscribeRequest(BaseModel):
    """Request to subscribe a member to a membership."""
    member_id: str = Field(..., min_length=1, description="Member identifier")
    membership_id: str = Field(..., min_length=1, description="Membership to subscribe to")
    gateway_id: Optional[str] = Field(None, description="Gateway used for the first payment")
    replaces: Optional[str] = Field(None, description="Subscription being replaced (plan change)")


class PurchaseRequest(BaseModel):
    """Request to pay a subscription's open invoice."""
    gateway_id: Optional[str] = Field(None, description="Gateway to charge")
    token: Optional[str] = Field(None, description="Tokenized payment method")
    customer_ref: Optional[str] = Field(None, description="Gateway customer reference")
    save_profile: bool = Field(True, description="Store the payment profile for renewals")


class SubscriptionResponse(BaseModel):
    id: str
    member_id: str
    membership_id: str
    state: str
    start_date: datetime
    trial_end: Optional[datetime]
    expire_date: Optional[datetime]
    grace_until: Optional[datetime]
    gateway_id: Optional[str]


class PurchaseResponse(BaseModel):
    invoice_id: str
    invoice_number: int
    invoice_status: str
    total: Decimal
    currency: str
    awaiting_confirmation: bool
    subscription: SubscriptionResponse


class AccessResponse(BaseModel):
    allowed: bool
    reason: str
    membership_id: Optional[str]
    available_at: Optional[datetime]


def _subscription_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        member_id=subscription.member_id,
        membership_id=subscription.membership_id,
        state=subscription.state.value,
        start_date=subscription.start_date,
        trial_end=subscription.trial_end,
        expire_date=subscription.expire_date,
        grace_until=subscription.grace_until,
        gateway_id=subscription.gateway_id,
    )


def _purchase_response(result: PurchaseResult) -> PurchaseResponse:
    return PurchaseResponse(
        invoice_id=result.invoice.id,
        invoice_number=result.invoice.invoice_number,
        invoice_status=result.invoice.status.value,
        total=result.invoice.total,
        currency=result.invoice.currency,
        awaiting_confirmation=result.awaiting_confirmation,
        subscription=_subscription_response(result.subscription),
    )


def get_controller(request: Request) -> LifecycleController:
    return request.app.state.controller


def get_access_service(request: Request) -> AccessService:
    return request.app.state.access_service


@router.post("/webhooks/{gateway_id}")
async def handle_gateway_webhook(gateway_id: str, request: Request):
    """
    Apply an asynchronous payment confirmation.

    Unsupported event types are acknowledged and ignored so the gateway
    stops redelivering them.
    """
    controller = get_controller(request)
    body = await request.body()
    gateway = controller.gateways.get(gateway_id)

    confirmation = gateway.parse_confirmation(body, request.headers)
    if confirmation is None:
        return {"status": "ignored"}

    logger.info("Payment confirmation received", extra={
        "gateway_id": gateway_id,
        "external_id": confirmation.external_id,
        "status": confirmation.status.value,
    })
    invoice = controller.handle_async_confirmation(
        confirmation.gateway_id, confirmation.external_id, confirmation.status
    )
    return {"status": "processed", "invoice_id": invoice.id, "invoice_status": invoice.status.value}


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
def subscribe(request: Request, subscribe_request: SubscribeRequest):
    controller = get_controller(request)
    subscription = controller.subscribe(
        subscribe_request.member_id,
        subscribe_request.membership_id,
        subscribe_request.gateway_id,
        replaces=subscribe_request.replaces,
    )
    return _subscription_response(subscription)


@router.post("/subscriptions/{subscription_id}/purchase", response_model=PurchaseResponse)
def purchase(subscription_id: str, request: Request, purchase_request: PurchaseRequest):
    """
    Pay the subscription's open invoice.

    Declines (402) and retryable gateway failures (503) use the standard
    error envelope; the invoice id is in the error details.
    """
    controller = get_controller(request)
    details = PaymentDetails(
        token=purchase_request.token,
        customer_ref=purchase_request.customer_ref,
        save_profile=purchase_request.save_profile,
    )
    result = controller.attempt_purchase(subscription_id, purchase_request.gateway_id, details)
    result.raise_for_error()
    return _purchase_response(result)


@router.get("/access", response_model=AccessResponse)
def check_access(
    request: Request,
    content_id: str,
    rule_type: str,
    member_id: Optional[str] = None,
):
    try:
        parsed_type = RuleType(rule_type)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown rule type '{rule_type}'",
            details={"allowed": [value.value for value in RuleType]},
        ) from exc

    decision = get_access_service(request).check(member_id, content_id, parsed_type)
    return AccessResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        membership_id=decision.membership_id,
        available_at=decision.available_at,
    )


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    logger.warning("Application error", extra={
        "correlation_id": correlation_id,
        "error_code": exc.code,
        "status_code": exc.status_code,
        "path": request.url.path,
    })
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": correlation_id},
    )


def create_app(controller: LifecycleController, access_service: AccessService) -> FastAPI:
    app = FastAPI(title="Memberships")
    app.state.controller = controller
    app.state.access_service = access_service
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_exception_handler(AppError, _app_error_handler)
    app.include_router(router)
    return app


def build_gateways(settings: Settings) -> GatewayRegistry:
    return GatewayRegistry([
        FreeGateway(),
        ManualGateway(instructions=settings.manual_payment_instructions),
        StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            timeout=settings.gateway_timeout_seconds,
        ),
    ])


def build_controller(settings: Settings, events: Optional[EventDispatcher] = None) -> LifecycleController:
    """Storage, plans and gateways wired into a LifecycleController."""
    storage = create_storage(settings.database_url)
    loader = MembershipLoader(settings.memberships_config_path, default_currency=settings.currency)
    loader.sync_to(storage)

    taxes = FlatTax(settings.tax_name, settings.tax_rate) if settings.tax_name and settings.tax_rate else None
    return LifecycleController(
        storage,
        build_gateways(settings),
        events=events,
        discounts=CouponDiscount(loader.coupons()),
        taxes=taxes,
        grace_period_days=settings.grace_period_days,
    )


def build_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire storage, gateways, controller and access service from settings."""
    settings = settings or load_settings()
    events = EventDispatcher()
    controller = build_controller(settings, events)
    access_service = AccessService(
        controller.storage,
        cache=AccessSnapshotCache(settings.redis_url, ttl_seconds=settings.access_cache_ttl_seconds),
        events=events,
    )
    logger.info("Membership app configured", extra={
        "gateways": controller.gateways.ids(),
        "grace_period_days": settings.grace_period_days,
    })
    return create_app(controller, access_service)
