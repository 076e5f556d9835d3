import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from sqlalchemy.orm import sessionmaker

from common.error_handling import ErrorCodes, ServiceError, add_error_handlers
from common.retry import dispatch_retry_config
from common.schemas import OpenPayment, PaymentView, SubscriptionView, WebhookAck
from common.settings import Settings, settings as default_settings
from common.tracing import ingestion_tracer, tracing_middleware
from ingestion_service.db import make_engine, make_session_factory
from ingestion_service.dispatcher import SideEffectDispatcher
from ingestion_service.domain import PaymentState, Provider, SubscriptionState
from ingestion_service.effects import build_default_handlers
from ingestion_service.errors import UnknownProvider
from ingestion_service.ingestion import IngestionService
from ingestion_service.models import Base
from ingestion_service.providers import resolve_provider

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _provider_or_404(provider_id: str) -> Provider:
    provider = resolve_provider(provider_id)
    if provider is None:
        raise UnknownProvider(provider_id)
    return provider


def _payment_view(state: PaymentState) -> PaymentView:
    return PaymentView(
        id=state.id,
        provider=state.provider.value,
        external_id=state.external_id,
        amount=state.amount,
        currency=state.currency,
        status=state.status.value,
        owner_ref=state.owner_ref,
        created_at=state.created_at,
        completed_at=state.completed_at,
        version=state.version,
    )


def _subscription_view(state: SubscriptionState) -> SubscriptionView:
    return SubscriptionView(
        id=state.id,
        provider=state.provider.value,
        external_id=state.external_id,
        owner_ref=state.owner_ref,
        plan=state.plan,
        status=state.status.value,
        current_period_end=state.current_period_end,
        cancel_at=state.cancel_at,
        version=state.version,
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> FastAPI:
    cfg = settings or default_settings
    if session_factory is None:
        session_factory = make_session_factory(make_engine(cfg))
    use_default_handlers = dispatcher is None
    if dispatcher is None:
        dispatcher = SideEffectDispatcher(
            handlers={},
            retry_config=dispatch_retry_config(cfg),
            workers=cfg.dispatch_workers,
            queue_size=cfg.dispatch_queue_size,
        )
    ingestion = IngestionService(cfg, session_factory, dispatcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        if use_default_handlers:
            dispatcher.handlers = build_default_handlers(cfg)
        await dispatcher.start()
        logger.info("Ingestion service started")
        yield
        await dispatcher.stop()

    app = FastAPI(title="Payment Event Ingestion Service", lifespan=lifespan)
    app.state.settings = cfg
    app.state.ingestion = ingestion
    app.state.dispatcher = dispatcher
    add_error_handlers(app)

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        return await tracing_middleware(request, call_next, ingestion_tracer)

    @app.post("/webhooks/{provider_id}", response_model=WebhookAck)
    async def receive_webhook(provider_id: str, request: Request):
        """Provider callback. The body is read raw; signatures cover its exact bytes."""
        raw_body = await request.body()
        await ingestion.ingest(provider_id, raw_body, request.headers)
        return WebhookAck()

    @app.post("/payments", response_model=PaymentView, status_code=201)
    def open_payment(payload: OpenPayment):
        """Open a PENDING payment (internal; precondition for payment webhooks)"""
        _provider_or_404(payload.provider)
        with session_factory() as db:
            state = ingestion.ledger.open_payment(db, payload)
        return _payment_view(state)

    @app.get("/payments/{provider_id}/{external_id}", response_model=PaymentView)
    def get_payment(provider_id: str, external_id: str):
        provider = _provider_or_404(provider_id)
        with session_factory() as db:
            state = ingestion.ledger.get_payment(db, provider, external_id)
        if state is None:
            raise ServiceError(ErrorCodes.RECORD_NOT_FOUND, f"No payment {provider.value}:{external_id}")
        return _payment_view(state)

    @app.get("/subscriptions/{provider_id}/{external_id}", response_model=SubscriptionView)
    def get_subscription(provider_id: str, external_id: str):
        provider = _provider_or_404(provider_id)
        with session_factory() as db:
            state = ingestion.ledger.get_subscription(db, provider, external_id)
        if state is None:
            raise ServiceError(ErrorCodes.RECORD_NOT_FOUND, f"No subscription {provider.value}:{external_id}")
        return _subscription_view(state)

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "service": "ingestion",
            "storage": ingestion.breaker.get_state(),
            "dispatcher": dispatcher.get_state(),
        }

    return app


app = create_app()
