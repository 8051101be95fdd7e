# storefront/workers/celery_app.py
from celery import Celery
from celery.schedules import crontab

SWEEP_TASK_NAME = "storefront.workers.tasks.sweep_due_stores"

celery = Celery("storefront", include=["storefront.workers.tasks"])

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_time_limit=300,
    task_soft_time_limit=240,
)


def beat_schedule(sweep_minutes: int) -> dict:
    return {
        "sweep-due-stores": {
            "task": SWEEP_TASK_NAME,
            "schedule": crontab(minute=f"*/{max(1, sweep_minutes)}"),
        },
    }


def init_celery(app):
    celery.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL"),
        result_backend=app.config.get("CELERY_RESULT_BACKEND"),
        beat_schedule=beat_schedule(app.config.get("AUTOMATION_SWEEP_MINUTES", 5)),
        task_always_eager=bool(app.config.get("TESTING")),
    )

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    app.extensions["celery"] = celery
    return celery
