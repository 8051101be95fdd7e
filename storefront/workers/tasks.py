# storefront/workers/tasks.py
import logging

from celery import shared_task

from storefront.automation.sweep import sweep_due_stores as run_sweep
from storefront.workers.celery_app import SWEEP_TASK_NAME

logger = logging.getLogger(__name__)


@shared_task(name=SWEEP_TASK_NAME, acks_late=True, ignore_result=False)
def sweep_due_stores():
    """Beat entry point: mark due, claim and dispatch stores."""
    summary = run_sweep()
    logger.info("Automation sweep finished", extra={"summary": summary})
    return summary
