"""
Credit Microservice API

Dual-bucket credit ledger with promo codes, transfers, paid purchases and
Stripe-backed memberships.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from . import __version__
from .credit_pack_service import CreditPackService
from .credit_service import CreditService
from .factory import CreditServices, apply_migrations, create_credit_service
from .membership_service import MembershipService
from .models import (
    AddCreditsRequest,
    ConsumeCreditsRequest,
    ConsumeWithPriorityRequest,
    CreateCreditPackRequest,
    CreateCreditsRequest,
    CreateMembershipRequest,
    CreatePromoCodeRequest,
    CreateStripeCustomerRequest,
    CreateSubscriptionRequest,
    CreditBalance,
    CreditHistoryResponse,
    CreditPack,
    HealthCheckResponse,
    LegacyUsePromoCodeRequest,
    Membership,
    PaymentTransactionResult,
    PromoCode,
    PromoCodeRedemption,
    PromoCodeUsage,
    PromoCodeValidation,
    PurchaseCreditsRequest,
    TransferCreditsRequest,
    TransferResult,
    UpdateCreditPackRequest,
    UpdateCreditsRequest,
    UpdateMembershipRequest,
    UpdatePromoCodeRequest,
    UsePromoCodeRequest,
    WebhookResult,
)
from .promo_code_service import PromoCodeService
from .protocols import (
    ConflictError,
    CreditServiceError,
    ExternalServiceError,
    LegacyPromoCodeError,
    OperationFailedError,
    ResourceNotFound,
    ValidationError,
)
from .routes_registry import SERVICE_METADATA

settings = get_settings()
config = settings.service

# Configure logging
logger = setup_service_logger("credit_service", config=settings.logging)

# Global variables
services: Optional[CreditServices] = None
event_bus = None  # NATS event bus
SERVICE_PORT = config.service_port or 8229


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global services, event_bus

    try:
        # Initialize NATS JetStream event bus
        if settings.infrastructure.nats_enabled:
            try:
                event_bus = await get_event_bus("credit_service", servers=settings.infrastructure.nats_servers)
                logger.info("Event bus initialized successfully")
            except Exception as e:
                logger.warning(f"Failed to initialize event bus: {e}. Continuing without events.")
                event_bus = None

        services = create_credit_service(settings=settings, event_bus=event_bus)
        await services.db.connect()
        if config.run_migrations:
            await apply_migrations(services.db, schema=config.db_schema)

        # Subscribe to events if event bus is available
        if event_bus:
            try:
                from .events import get_event_handlers

                handler_map = get_event_handlers(services.credit_service, plan_credits=config.plan_credits)
                for pattern, handler_func in handler_map.items():
                    await event_bus.subscribe_to_events(
                        pattern=pattern,
                        handler=handler_func,
                        durable=f"credit-{pattern.replace('.', '-').replace('*', 'all')}-consumer",
                    )
                    logger.info(f"Subscribed to {pattern}")

            except Exception as e:
                logger.warning(f"Failed to subscribe to events: {e}")

        logger.info(f"Credit service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize credit service: {e}")
        raise
    finally:
        if event_bus:
            try:
                await event_bus.close()
                logger.info("Credit event bus closed")
            except Exception as e:
                logger.error(f"Error closing event bus: {e}")

        if services:
            cache = services.credit_service.cache
            if cache is not None and hasattr(cache, "close"):
                await cache.close()
            if services.db:
                await services.db.close()
            logger.info("Credit service connections closed")


# Create FastAPI application
app = FastAPI(
    title="Credit Service",
    description="Dual-bucket credit ledger with promo codes and memberships",
    version=__version__,
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_credit_service() -> CreditService:
    """Get credit service instance"""
    if not services:
        raise HTTPException(status_code=503, detail="Credit service not initialized")
    return services.credit_service


async def get_promo_code_service() -> PromoCodeService:
    if not services:
        raise HTTPException(status_code=503, detail="Credit service not initialized")
    return services.promo_code_service


async def get_membership_service() -> MembershipService:
    if not services:
        raise HTTPException(status_code=503, detail="Credit service not initialized")
    return services.membership_service


async def get_credit_pack_service() -> CreditPackService:
    if not services or services.credit_pack_service is None:
        raise HTTPException(status_code=503, detail="Credit service not initialized")
    return services.credit_pack_service


# ====================
# Error Handling
# ====================


def _error_status(exc: CreditServiceError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, ResourceNotFound):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, ExternalServiceError):
        return 502
    if isinstance(exc, OperationFailedError):
        return 500
    return 400


@app.exception_handler(CreditServiceError)
async def credit_service_error_handler(request: Request, exc: CreditServiceError):
    """Map domain errors to HTTP responses"""
    status_code = _error_status(exc)

    if isinstance(exc, LegacyPromoCodeError):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    if isinstance(exc, OperationFailedError):
        logger.error(f"{exc.operation} failed in {request.url.path}: {exc.context}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=status_code, content={"detail": exc.message, "errors": exc.errors})
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "reason": exc.details})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception in {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ====================
# Health Check
# ====================


@app.get("/api/v1/credits/health", response_model=HealthCheckResponse)
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Basic health check"""
    dependencies = {}
    if services:
        dependencies = await services.credit_service.health_check()

    healthy = all(dep.get("healthy", False) for dep in dependencies.values() if isinstance(dep, dict))
    return HealthCheckResponse(
        status="healthy" if healthy else "degraded",
        service=SERVICE_METADATA["service_name"],
        port=SERVICE_PORT,
        version=SERVICE_METADATA["version"],
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )


# ====================
# Balances
# ====================


@app.post("/api/v1/credits", response_model=CreditBalance, status_code=201)
async def create_credits(
    request: CreateCreditsRequest,
    service: CreditService = Depends(get_credit_service),
):
    """Create a user's balance"""
    return await service.create_user_credits(request.user_id, request.amount_demand, request.amount_sub)


@app.post("/api/v1/credits/transfer", response_model=TransferResult)
async def transfer_credits(
    request: TransferCreditsRequest,
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    service: CreditService = Depends(get_credit_service),
):
    """Transfer demand credits between users"""
    return await service.transfer_credits(
        from_user_id=request.from_user_id,
        to_user_id=request.to_user_id,
        amount=request.amount,
        description=request.description,
        acting_role=x_user_role,
    )


@app.get("/api/v1/credits/{user_id}", response_model=CreditBalance)
async def get_credits(user_id: str, service: CreditService = Depends(get_credit_service)):
    """Get a user's balance"""
    return await service.get_user_credits(user_id)


@app.get("/api/v1/credits/{user_id}/history", response_model=CreditHistoryResponse)
async def get_credits_history(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    service: CreditService = Depends(get_credit_service),
):
    """Get a user's credit history, newest first"""
    return await service.get_user_credits_history(user_id, limit=limit, offset=offset)


@app.put("/api/v1/credits/{user_id}", response_model=CreditBalance)
async def update_credits(
    user_id: str,
    request: UpdateCreditsRequest,
    service: CreditService = Depends(get_credit_service),
):
    return await service.update_user_credits(user_id, request.amount_demand, request.amount_sub)


@app.delete("/api/v1/credits/{user_id}")
async def delete_credits(user_id: str, service: CreditService = Depends(get_credit_service)):
    deleted = await service.delete_user_credits(user_id)
    return {"success": deleted, "message": "Credits deleted"}


@app.post("/api/v1/credits/{user_id}/add", response_model=CreditBalance)
async def add_credits(
    user_id: str,
    request: AddCreditsRequest,
    service: CreditService = Depends(get_credit_service),
):
    """Add demand credits, with an optional promo code bonus"""
    return await service.add_credits_to_user(
        user_id,
        request.amount,
        request.description,
        promo_code=request.promo_code,
        transaction_id=request.transaction_id,
    )


@app.post("/api/v1/credits/{user_id}/purchase", response_model=PaymentTransactionResult)
async def purchase_credits(
    user_id: str,
    request: PurchaseCreditsRequest,
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    service: CreditService = Depends(get_credit_service),
):
    """Purchase demand credits (or a credit pack) through the payment gateway"""
    return await service.add_credits_with_payment(
        user_id,
        request.amount,
        acting_role=x_user_role,
        promo_code=request.promo_code,
        price=request.price,
        payment_method_id=request.payment_method_id,
        pack_id=request.pack_id,
    )


@app.post("/api/v1/credits/{user_id}/consume", response_model=CreditBalance)
async def consume_credits(
    user_id: str,
    request: ConsumeCreditsRequest,
    service: CreditService = Depends(get_credit_service),
):
    """Consume exact amounts from each bucket"""
    return await service.consume_user_credits(
        user_id, request.demand_amount, request.sub_amount, request.description
    )


@app.post("/api/v1/credits/{user_id}/consume-priority", response_model=CreditBalance)
async def consume_credits_with_priority(
    user_id: str,
    request: ConsumeWithPriorityRequest,
    service: CreditService = Depends(get_credit_service),
):
    """Consume credits, subscription credits first"""
    return await service.consume_user_credits_with_priority(user_id, request.amount, request.description)


# ====================
# Promo Codes
# ====================


@app.get("/api/v1/promo-codes", response_model=List[PromoCode])
async def list_promo_codes(
    active_only: bool = False,
    service: PromoCodeService = Depends(get_promo_code_service),
):
    return await service.list_promo_codes(active_only=active_only)


@app.post("/api/v1/promo-codes", response_model=PromoCode, status_code=201)
async def create_promo_code(
    request: CreatePromoCodeRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: PromoCodeService = Depends(get_promo_code_service),
):
    """Create a promo code; the acting admin is recorded as creator"""
    return await service.create_promo_code(
        code=request.code,
        discount=request.discount,
        allowed_times=request.allowed_times,
        amount_available=request.amount_available,
        expiration_date=request.expiration_date,
        created_by=x_user_id,
        active=request.active,
    )


@app.get("/api/v1/promo-codes/validate", response_model=PromoCodeValidation)
async def validate_promo_code(
    code: str,
    user_id: str,
    service: PromoCodeService = Depends(get_promo_code_service),
):
    """Check whether a user can redeem a code"""
    return await service.validate_for_user(code, user_id)


@app.post("/api/v1/promo-codes/use", response_model=PromoCodeRedemption)
async def use_promo_code(
    request: UsePromoCodeRequest,
    service: PromoCodeService = Depends(get_promo_code_service),
):
    return await service.use_promo_code(request.code, request.user_id, request.transaction_id)


@app.post("/api/v1/promo-codes/use-legacy", response_model=PromoCode)
async def use_promo_code_legacy(
    request: LegacyUsePromoCodeRequest,
    service: PromoCodeService = Depends(get_promo_code_service),
):
    """Legacy redemption; errors carry the historical literal messages"""
    return await service.use_promo_code_legacy(request.code)


@app.get("/api/v1/promo-codes/code/{code}", response_model=PromoCode)
async def get_promo_code_by_code(code: str, service: PromoCodeService = Depends(get_promo_code_service)):
    return await service.get_promo_code_by_code(code)


@app.get("/api/v1/promo-codes/usages/user/{user_id}", response_model=List[PromoCodeUsage])
async def get_user_promo_code_usages(user_id: str, service: PromoCodeService = Depends(get_promo_code_service)):
    return await service.get_user_promo_code_usages(user_id)


@app.get("/api/v1/promo-codes/{promo_code_id}", response_model=PromoCode)
async def get_promo_code(promo_code_id: str, service: PromoCodeService = Depends(get_promo_code_service)):
    return await service.get_promo_code(promo_code_id)


@app.put("/api/v1/promo-codes/{promo_code_id}", response_model=PromoCode)
async def update_promo_code(
    promo_code_id: str,
    request: UpdatePromoCodeRequest,
    service: PromoCodeService = Depends(get_promo_code_service),
):
    return await service.update_promo_code(promo_code_id, request.model_dump(exclude_unset=True))


@app.post("/api/v1/promo-codes/{promo_code_id}/cancel", response_model=PromoCode)
async def cancel_promo_code(promo_code_id: str, service: PromoCodeService = Depends(get_promo_code_service)):
    return await service.cancel_promo_code(promo_code_id)


@app.delete("/api/v1/promo-codes/{promo_code_id}")
async def delete_promo_code(promo_code_id: str, service: PromoCodeService = Depends(get_promo_code_service)):
    deleted = await service.delete_promo_code(promo_code_id)
    return {"success": deleted, "message": "Promo code deleted"}


@app.get("/api/v1/promo-codes/{promo_code_id}/usages", response_model=List[PromoCodeUsage])
async def get_promo_code_usages(promo_code_id: str, service: PromoCodeService = Depends(get_promo_code_service)):
    return await service.get_promo_code_usages(promo_code_id)


# ====================
# Credit Packs
# ====================


@app.get("/api/v1/credit-packs", response_model=List[CreditPack])
async def list_active_credit_packs(service: CreditPackService = Depends(get_credit_pack_service)):
    """Packs on sale, smallest first"""
    return await service.get_active_credit_packs()


@app.get("/api/v1/credit-packs/admin/all", response_model=List[CreditPack])
async def list_all_credit_packs(service: CreditPackService = Depends(get_credit_pack_service)):
    return await service.get_all_credit_packs()


@app.post("/api/v1/credit-packs/admin", response_model=CreditPack, status_code=201)
async def create_credit_pack(
    request: CreateCreditPackRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: CreditPackService = Depends(get_credit_pack_service),
):
    """Create a pack; the acting admin is recorded as creator"""
    return await service.create_credit_pack(
        type=request.type,
        amount=request.amount,
        price=request.price,
        frequency=request.frequency,
        active=request.active,
        created_by=x_user_id,
    )


@app.put("/api/v1/credit-packs/admin/{pack_id}", response_model=CreditPack)
async def update_credit_pack(
    pack_id: str,
    request: UpdateCreditPackRequest,
    service: CreditPackService = Depends(get_credit_pack_service),
):
    return await service.update_credit_pack(pack_id, request.model_dump(exclude_unset=True))


@app.delete("/api/v1/credit-packs/admin/{pack_id}")
async def delete_credit_pack(pack_id: str, service: CreditPackService = Depends(get_credit_pack_service)):
    deleted = await service.delete_credit_pack(pack_id)
    return {"success": deleted, "message": "Credit pack deleted"}


@app.patch("/api/v1/credit-packs/admin/{pack_id}/deactivate", response_model=CreditPack)
async def deactivate_credit_pack(pack_id: str, service: CreditPackService = Depends(get_credit_pack_service)):
    return await service.deactivate_credit_pack(pack_id)


@app.patch("/api/v1/credit-packs/admin/{pack_id}/activate", response_model=CreditPack)
async def activate_credit_pack(pack_id: str, service: CreditPackService = Depends(get_credit_pack_service)):
    return await service.activate_credit_pack(pack_id)


@app.get("/api/v1/credit-packs/{pack_id}", response_model=CreditPack)
async def get_credit_pack(pack_id: str, service: CreditPackService = Depends(get_credit_pack_service)):
    return await service.get_credit_pack(pack_id)


# ====================
# Memberships
# ====================


@app.post("/api/v1/memberships", response_model=Membership, status_code=201)
async def create_membership(
    request: CreateMembershipRequest,
    service: MembershipService = Depends(get_membership_service),
):
    return await service.create_membership(
        request.user_id,
        stripe_customer_id=request.stripe_customer_id,
        plan_type=request.plan_type,
        subscription_status=request.subscription_status,
    )


@app.post("/api/v1/memberships/stripe-customer", response_model=Membership, status_code=201)
async def create_stripe_customer(
    request: CreateStripeCustomerRequest,
    service: MembershipService = Depends(get_membership_service),
):
    """Create the Stripe customer of a user with an inactive membership"""
    return await service.create_stripe_customer_and_membership(request.user_id, request.email, request.name)


@app.get("/api/v1/memberships/user/{user_id}", response_model=Membership)
async def get_membership_by_user(user_id: str, service: MembershipService = Depends(get_membership_service)):
    return await service.get_membership_by_user_id(user_id)


@app.get("/api/v1/memberships/{membership_id}", response_model=Membership)
async def get_membership(membership_id: str, service: MembershipService = Depends(get_membership_service)):
    return await service.get_membership(membership_id)


@app.put("/api/v1/memberships/{membership_id}", response_model=Membership)
async def update_membership(
    membership_id: str,
    request: UpdateMembershipRequest,
    service: MembershipService = Depends(get_membership_service),
):
    return await service.update_membership(membership_id, request.model_dump(exclude_unset=True))


@app.delete("/api/v1/memberships/{membership_id}")
async def delete_membership(membership_id: str, service: MembershipService = Depends(get_membership_service)):
    deleted = await service.delete_membership(membership_id)
    return {"success": deleted, "message": "Membership deleted"}


@app.post("/api/v1/memberships/{membership_id}/subscription", response_model=Membership)
async def create_subscription(
    membership_id: str,
    request: CreateSubscriptionRequest,
    service: MembershipService = Depends(get_membership_service),
):
    return await service.create_subscription(membership_id, request.price_id, request.plan_type)


@app.delete("/api/v1/memberships/{membership_id}/subscription", response_model=Membership)
async def cancel_subscription(membership_id: str, service: MembershipService = Depends(get_membership_service)):
    return await service.cancel_subscription(membership_id)


@app.post("/api/v1/webhooks/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: MembershipService = Depends(get_membership_service),
):
    """Stripe subscription lifecycle webhook"""
    if not stripe_signature:
        raise ValidationError({"signature": ["Missing Stripe-Signature header"]})
    payload = await request.body()
    return await service.handle_webhook(payload, stripe_signature)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.credit_service.main:app",
        host=config.service_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=settings.logging.log_level.lower(),
    )
