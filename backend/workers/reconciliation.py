"""
Reconciliation Workers — monthly carrier invoice (MIS) reconciliation.

Carrier MIS files are dropped into ``{reconciliation_inbox_dir}/{carrier}/{YYYY-MM}.csv``.
The monthly beat entry reconciles the previous billing month for every
configured carrier; a missing file is logged and skipped.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import structlog

from core.config import get_settings
from db.session import build_engine, session_factory
from workers.celery_app import celery_app
from workers.disputes import build_lifecycle

logger = structlog.get_logger()


def previous_billing_month(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    return f"{year:04d}-{month:02d}"


def invoice_path(carrier: str, billing_month: str) -> Path:
    return Path(get_settings().reconciliation_inbox_dir) / carrier / f"{billing_month}.csv"


@celery_app.task(
    name="workers.reconciliation.reconcile_all_carriers",
    bind=True,
    max_retries=1,
    default_retry_delay=600,
    acks_late=True,
)
def reconcile_all_carriers(self, billing_month: str | None = None):
    month = billing_month or previous_billing_month()
    carriers = get_settings().reconciliation_carriers
    for carrier in carriers:
        celery_app.send_task(
            "workers.reconciliation.reconcile_carrier_invoice",
            kwargs={"carrier": carrier, "billing_month": month},
        )
    logger.info("reconciliation.dispatched", billing_month=month, carriers=carriers)
    return {"status": "success", "billing_month": month, "carriers": list(carriers)}


@celery_app.task(
    name="workers.reconciliation.reconcile_carrier_invoice",
    bind=True,
    max_retries=2,
    default_retry_delay=900,
    acks_late=True,
)
def reconcile_carrier_invoice(self, carrier: str, billing_month: str):
    from alerts.notifications import CeleryNotificationSender
    from reconciliation.invoice import InvoiceReconciler

    path = invoice_path(carrier, billing_month)
    if not path.exists():
        logger.warning("reconciliation.invoice_missing", carrier=carrier, billing_month=billing_month, path=str(path))
        return {"status": "skipped", "reason": "invoice_missing", "carrier": carrier, "billing_month": billing_month}

    async def _reconcile():
        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                lifecycle = build_lifecycle(db)
                reconciler = InvoiceReconciler(
                    db,
                    pricing=lifecycle.pricing,
                    lifecycle=lifecycle,
                    notifier=CeleryNotificationSender(),
                )
                run = await reconciler.run(carrier, billing_month, path.read_bytes(), source_filename=path.name)
                return {
                    "status": run.status,
                    "run_id": str(run.run_id),
                    "version": run.version,
                    "report_ref": run.report_ref,
                    **(run.summary or {}),
                }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_reconcile())
    except Exception as exc:
        logger.error(
            "reconciliation.task_failed", carrier=carrier, billing_month=billing_month, error=str(exc), exc_info=True
        )
        raise self.retry(exc=exc)
