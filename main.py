import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import stripe
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from catalog import calculate_item_price, feature_ids_in_cart, product_id
from config import settings
from errors import UnknownCatalogItemError
from activation import parse_purchased_features
from ledger_store import LedgerStore
from records import canonical_serial
from remote_store import GitHubContentsStore, InMemoryRemoteStore, RemoteLocator
from models import (
    LicenseInfoResponse,
    ErrorResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    WebhookAckResponse,
    HealthCheckResponse
)

logger = logging.getLogger(__name__)

def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def build_ledger_store() -> LedgerStore:
    """Ledger store wired from settings."""
    locator = RemoteLocator(
        owner=settings.GITHUB_OWNER,
        repo=settings.GITHUB_REPO,
        path=settings.GITHUB_FILE_PATH,
        branch=settings.GITHUB_BRANCH,
    )
    if settings.LEDGER_BACKEND == "memory":
        remote = InMemoryRemoteStore()
    elif settings.LEDGER_BACKEND == "github":
        remote = GitHubContentsStore(
            token=settings.GITHUB_TOKEN,
            api_url=settings.GITHUB_API_URL,
            timeout=settings.GITHUB_API_TIMEOUT,
        )
    else:
        raise ValueError(f"Unknown LEDGER_BACKEND: {settings.LEDGER_BACKEND!r}")

    return LedgerStore(remote, locator, conflict_retries=settings.COMMIT_CONFLICT_RETRIES)

def warn_missing_secrets() -> None:
    if not settings.STRIPE_SECRET_KEY:
        logger.error("Missing STRIPE_SECRET_KEY")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Missing STRIPE_WEBHOOK_SECRET")
    if settings.LEDGER_BACKEND == "github" and not settings.GITHUB_TOKEN:
        logger.error("Missing GITHUB_TOKEN")

def get_ledger_store(request: Request) -> LedgerStore:
    return request.app.state.ledger_store

def verify_stripe_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the decoded event."""
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8"),
        signature or "",
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
    )
    return json.loads(payload)

def create_app(ledger_store: Optional[LedgerStore] = None) -> FastAPI:
    """
    Build the application.

    The ledger store is created from settings at startup unless one is
    supplied (tests pass an isolated store).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        warn_missing_secrets()
        store = ledger_store or build_ledger_store()
        await store.load()
        store.start_resync(settings.RESYNC_INTERVAL_MINUTES)
        app.state.ledger_store = store
        try:
            yield
        finally:
            store.shutdown()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        description="License ledger and checkout service backed by a GitHub-hosted CSV",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=PlainTextResponse)
    async def index():
        return "DP Biotech Payment Server active (GitHub-backed CSV)"

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(store: LedgerStore = Depends(get_ledger_store)):
        """
        Health check endpoint for container orchestration.

        Reports the ledger size and whether the remote mirror is behind.
        """
        return {
            "status": "healthy",
            "service": "license-ledger",
            "version": settings.APP_VERSION,
            "records": len(store),
            "versionToken": store.version,
            "dirty": store.dirty,
        }

    @app.get(
        "/check-license/{serial}",
        response_model=LicenseInfoResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def check_license(serial: str, store: LedgerStore = Depends(get_ledger_store)):
        record = store.query(serial)
        if record is None:
            return JSONResponse(status_code=404, content={"error": "License not found"})
        return LicenseInfoResponse.from_record(record)

    @app.post(
        "/create-checkout-session",
        response_model=CheckoutSessionResponse,
        responses={400: {"model": ErrorResponse}},
    )
    def create_checkout_session(request: CheckoutSessionRequest):
        """
        Create a Stripe Checkout session for the cart.

        Every line is priced server-side from the catalog. When a serial is
        supplied, it travels in the session metadata together with the
        purchased features so the webhook can activate them.
        """
        if not request.customerEmail or not request.cart:
            return JSONResponse(
                status_code=400,
                content={"error": "Missing data: cart and email are required."},
            )

        try:
            line_items = [
                {
                    "price_data": {
                        "currency": settings.CHECKOUT_CURRENCY,
                        "product_data": {"name": item.name or product_id(item.id).value},
                        "unit_amount": calculate_item_price(item.id, item.options),
                    },
                    "quantity": 1,
                }
                for item in request.cart
            ]
        except UnknownCatalogItemError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})

        metadata = {}
        if request.serialNumber:
            metadata["serial_number"] = canonical_serial(request.serialNumber)
            metadata["features_purchased"] = feature_ids_in_cart(item.id for item in request.cart)

        stripe.api_key = settings.STRIPE_SECRET_KEY
        try:
            customer = stripe.Customer.create(email=request.customerEmail)
            session = stripe.checkout.Session.create(
                customer=customer.id,
                mode="payment",
                payment_method_types=["card"],
                line_items=line_items,
                metadata=metadata,
                success_url=settings.CHECKOUT_SUCCESS_URL,
                cancel_url=settings.CHECKOUT_CANCEL_URL,
            )
        except stripe.StripeError as e:
            logger.error("Stripe error: %s", e)
            status = e.http_status if isinstance(e.http_status, int) else 500
            return JSONResponse(
                status_code=status,
                content={"error": e.user_message or str(e) or "Internal server error."},
            )

        logger.info("Stripe session created: %s", session.id)
        return {"url": session.url}

    @app.post("/stripe-webhook", response_model=WebhookAckResponse)
    async def stripe_webhook(request: Request, store: LedgerStore = Depends(get_ledger_store)):
        """
        Receive Stripe events.

        A completed checkout activates the purchased features on the serial
        carried in its metadata. Once the signature checks out the event is
        always acknowledged, even if the ledger could not be mirrored, so
        Stripe does not redeliver it.
        """
        payload = await request.body()
        try:
            event = verify_stripe_event(payload, request.headers.get("stripe-signature"))
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise HTTPException(status_code=400, detail="Invalid webhook signature")

        if event.get("type") == "checkout.session.completed":
            session = (event.get("data") or {}).get("object") or {}
            metadata = session.get("metadata") or {}
            serial = canonical_serial(metadata.get("serial_number"))
            features = parse_purchased_features(metadata.get("features_purchased"))

            logger.info("Payment completed for serial: %s", serial or "(no serial)")
            await store.activate(serial, features)

        return {"received": True}

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
