# storefront/workers/entry.py
# celery -A storefront.workers.entry worker -Q default,automation
# celery -A storefront.workers.entry beat
from storefront import create_app
from storefront.logging_config import configure_worker_logging

flask_app = create_app()
configure_worker_logging(flask_app.config.get("LOG_LEVEL"))
celery = flask_app.extensions["celery"]
