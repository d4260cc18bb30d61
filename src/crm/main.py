"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
error handlers, lifespan events for database and service initialization,
the background job runners, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm.config import get_settings
from src.crm.core.database import close_db, get_session, init_db
from src.crm.core.errors import register_exception_handlers
from src.crm.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, services and runners on startup, stop them on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Each module is wrapped in its own try/except so one failure leaves
    # its routes answering 503 instead of preventing startup.

    from src.crm.notifications.email import EmailSender
    from src.crm.notifications.sms import TwilioSmsClient

    email_sender = EmailSender(settings)
    sms_client = TwilioSmsClient.from_settings(settings)
    if not settings.smtp_configured:
        log.warning("notifications.smtp_not_configured")
    if not settings.twilio_configured:
        log.warning("notifications.twilio_not_configured")

    # ── Event Reminders ──────────────────────────────────────────────────
    event_reminder_worker = None
    try:
        from src.crm.events.reminders import EventReminderSender
        from src.crm.events.repository import EventReminderRepository
        from src.crm.events.service import EventReminderService
        from src.crm.events.worker import EventReminderWorker

        reminder_repo = EventReminderRepository(session_factory=get_session)
        reminder_sender = EventReminderSender(reminder_repo, email_sender, sms_client)
        app.state.event_reminder_service = EventReminderService(reminder_repo, reminder_sender)
        event_reminder_worker = EventReminderWorker(
            reminder_repo, reminder_sender, batch_size=settings.EVENT_REMINDER_BATCH_SIZE
        )
        log.info("event_reminders.initialized")
    except Exception:
        log.warning("event_reminders.init_failed", exc_info=True)
        app.state.event_reminder_service = None

    # ── Outgoing Webhooks ────────────────────────────────────────────────
    webhook_worker = None
    try:
        from src.crm.webhooks.repository import WebhookRepository
        from src.crm.webhooks.service import WebhookService
        from src.crm.webhooks.worker import WebhookRetryWorker

        webhook_repo = WebhookRepository(session_factory=get_session)
        webhook_service = WebhookService.from_settings(webhook_repo, settings)
        app.state.webhook_service = webhook_service
        webhook_worker = WebhookRetryWorker(
            webhook_repo, webhook_service, batch_size=settings.WEBHOOK_RETRY_BATCH_SIZE
        )
        log.info("webhooks.initialized")
    except Exception:
        log.warning("webhooks.init_failed", exc_info=True)
        app.state.webhook_service = None

    # ── Follow-ups ───────────────────────────────────────────────────────
    follow_up_worker = None
    try:
        from src.crm.follow_ups.repository import FollowUpRepository
        from src.crm.follow_ups.service import FollowUpService
        from src.crm.follow_ups.worker import FollowUpReminderWorker

        follow_up_repo = FollowUpRepository(session_factory=get_session)
        app.state.follow_up_service = FollowUpService(follow_up_repo)
        follow_up_worker = FollowUpReminderWorker(
            follow_up_repo, email_sender, batch_size=settings.FOLLOW_UP_REMINDER_BATCH_SIZE
        )
        log.info("follow_ups.initialized")
    except Exception:
        log.warning("follow_ups.init_failed", exc_info=True)
        app.state.follow_up_service = None

    # ── Scheduled Reports ────────────────────────────────────────────────
    report_worker = None
    try:
        from src.crm.reports.generator import ReportGenerator
        from src.crm.reports.repository import ScheduledReportRepository
        from src.crm.reports.service import ScheduledReportService
        from src.crm.reports.worker import ScheduledReportWorker

        report_repo = ScheduledReportRepository(session_factory=get_session)
        report_service = ScheduledReportService(
            report_repo, ReportGenerator(session_factory=get_session), email_sender
        )
        app.state.scheduled_report_service = report_service
        report_worker = ScheduledReportWorker(
            report_repo, report_service, batch_size=settings.SCHEDULED_REPORT_BATCH_SIZE
        )
        log.info("scheduled_reports.initialized")
    except Exception:
        log.warning("scheduled_reports.init_failed", exc_info=True)
        app.state.scheduled_report_service = None

    # ── Payments & Reconciliation ────────────────────────────────────────
    reconciliation_scheduler = None
    try:
        from src.crm.payments.receiver import StripeWebhookReceiver
        from src.crm.payments.repository import PaymentRepository
        from src.crm.payments.stripe_client import StripeGateway
        from src.crm.reconciliation.repository import ReconciliationRepository
        from src.crm.reconciliation.scheduler import ReconciliationScheduler
        from src.crm.reconciliation.service import ReconciliationService

        gateway = StripeGateway.from_settings(settings)
        app.state.stripe_webhook_receiver = StripeWebhookReceiver(
            PaymentRepository(session_factory=get_session),
            gateway,
            max_age_seconds=settings.STRIPE_WEBHOOK_MAX_AGE_SECONDS,
        )
        reconciliation_service = ReconciliationService(
            ReconciliationRepository(session_factory=get_session), gateway
        )
        app.state.reconciliation_service = reconciliation_service
        reconciliation_scheduler = ReconciliationScheduler(
            reconciliation_service, hour=settings.RECONCILIATION_CRON_HOUR
        )
        log.info("payments.initialized", stripe_configured=gateway.configured)
    except Exception:
        log.warning("payments.init_failed", exc_info=True)
        app.state.stripe_webhook_receiver = None
        app.state.reconciliation_service = None

    # ── Background Jobs ──────────────────────────────────────────────────
    app.state.background_jobs = None
    workers = (event_reminder_worker, webhook_worker, follow_up_worker, report_worker)
    if not settings.SCHEDULERS_ENABLED:
        log.info("background_jobs.disabled")
    elif any(worker is None for worker in workers):
        log.warning("background_jobs.not_started", reason="a worker failed to initialize")
    else:
        try:
            from src.crm.scheduling.jobs import BackgroundJobs, build_runners

            runners = build_runners(
                settings,
                event_reminders=event_reminder_worker,
                webhook_retries=webhook_worker,
                follow_up_reminders=follow_up_worker,
                scheduled_reports=report_worker,
            )
            jobs = BackgroundJobs(runners, cron=reconciliation_scheduler)
            jobs.start()
            app.state.background_jobs = jobs
        except Exception:
            log.warning("background_jobs.start_failed", exc_info=True)

    yield

    # Shutdown
    jobs = getattr(app.state, "background_jobs", None)
    if jobs is not None:
        try:
            await jobs.stop()
        except Exception:
            log.warning("background_jobs.stop_failed", exc_info=True)

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Nonprofit CRM API",
        version="0.1.0",
        description="Background automation and payment reconciliation for a nonprofit CRM",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
