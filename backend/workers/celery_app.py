"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "scalecheck",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "workers.disputes",
        "workers.fraud",
        "workers.notifications",
        "workers.reconciliation",
        "workers.scheduler",
        "workers.skus",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.disputes.*": {"queue": "disputes"},
        "workers.fraud.*": {"queue": "batch"},
        "workers.reconciliation.*": {"queue": "batch"},
        "workers.notifications.*": {"queue": "notifications"},
        "workers.scheduler.*": {"queue": "batch"},
        "workers.skus.*": {"queue": "batch"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Company-scoped jobs fan out via workers.scheduler.dispatch_active_companies.
    beat_schedule={
        # ── Dispute lifecycle ──────────────────────────────────────
        "auto-resolve-disputes-5m": {
            "task": "workers.disputes.auto_resolve_disputes",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "disputes"},
        },
        "retry-settlements-15m": {
            "task": "workers.disputes.retry_settlements",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "disputes"},
        },
        "scan-unverified-shipments-4h": {
            "task": "workers.disputes.scan_unverified_shipments",
            "schedule": crontab(minute=10, hour="*/4"),
            "options": {"queue": "disputes"},
        },
        # ── Batch analysis ─────────────────────────────────────────
        "fraud-analysis-daily": {
            "task": "workers.scheduler.dispatch_active_companies",
            "schedule": crontab(hour=2, minute=0),
            "kwargs": {"task_name": "workers.fraud.analyze_company_fraud", "stagger_seconds": 5},
            "options": {"queue": "batch"},
        },
        "sku-baseline-backfill-weekly": {
            "task": "workers.scheduler.dispatch_active_companies",
            "schedule": crontab(hour=3, minute=0, day_of_week="sun"),
            "kwargs": {
                "task_name": "workers.skus.backfill_sku_baselines",
                "stagger_seconds": 5,
                "shipped_within_days": 7,
            },
            "options": {"queue": "batch"},
        },
        "invoice-reconciliation-monthly": {
            "task": "workers.reconciliation.reconcile_all_carriers",
            "schedule": crontab(hour=4, minute=0, day_of_month=5),  # After carriers publish MIS files
            "options": {"queue": "batch"},
        },
    },
)
