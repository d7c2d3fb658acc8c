import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from tagshop.config import Settings, configure_logging
from tagshop.database import Store
from tagshop.errors import MalformedEvent, SecretNotConfigured, SignatureError, StoreUnavailable
from tagshop.notifications import NotificationChannel, NotificationDispatcher, SmtpChannel
from tagshop.reconciler import OrderReconciler, purge_processed_events
from tagshop.routes import router
from tagshop.routing import EventRouter
from tagshop.stripe_service import PaymentProviderClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; /paymentWebhook will answer 500")
    try:
        await run_in_threadpool(
            purge_processed_events, app.state.store.session_factory, settings.processed_event_retention_days
        )
    except StoreUnavailable:
        logger.exception("Could not purge processed webhook events at startup")
    yield
    app.state.store.dispose()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    channel: Optional[NotificationChannel] = None,
    payments: Optional[PaymentProviderClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    store = store or Store(settings.database_url)
    store.create_all()

    app = FastAPI(title="Engraving Storefront Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.payments = payments or PaymentProviderClient(settings.stripe_secret_key)
    app.state.event_router = EventRouter(OrderReconciler(store.session_factory))
    app.state.dispatcher = NotificationDispatcher(
        store.session_factory,
        channel or SmtpChannel.from_settings(settings),
        settings.order_notification_recipient,
        settings.send_customer_confirmation,
    )

    app.include_router(router)

    @app.post("/paymentWebhook")
    async def payment_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        stripe_signature: str = Header(None),
    ):
        # Raw bytes: the signature covers exactly what Stripe sent
        payload = await request.body()
        state = request.app.state

        try:
            event = state.payments.verify_webhook_signature(
                payload,
                stripe_signature,
                state.settings.stripe_webhook_secret,
                state.settings.webhook_tolerance_seconds,
            )
        except SecretNotConfigured:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured in env variables")
            raise HTTPException(status_code=500, detail="Webhook secret not configured")
        except SignatureError as exc:
            logger.warning("Rejected webhook (%s): %s", type(exc).__name__, exc)
            raise HTTPException(status_code=400, detail="Invalid signature")
        except MalformedEvent as exc:
            logger.warning("Rejected webhook with valid signature: %s", exc)
            raise HTTPException(status_code=400, detail="Invalid payload")

        logger.info("Stripe webhook event received id=%s type=%s", event.id, event.type)

        try:
            result = await run_in_threadpool(state.event_router.route, event)
        except StoreUnavailable:
            raise HTTPException(status_code=500, detail="Order store unavailable")

        if result.notify:
            # Runs after the response is sent; never delays the acknowledgement
            background_tasks.add_task(state.dispatcher.dispatch, result.order)

        logger.info("Webhook %s (%s) handled: %s", event.id, event.type, result.outcome)
        return {"received": True}

    return app
