"""Celery application for background import execution."""

import ssl

from celery import Celery

from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.utils.redis_client import normalize_redis_url, uses_tls

settings = get_settings()
configure_logging()

IMPORTS_QUEUE = "imports"


def _with_cert_reqs(url: str) -> str:
    """Celery's Redis backend reads ssl_cert_reqs from the URL at init time."""
    if "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


broker_url = normalize_redis_url(settings.broker_url)
backend_url = normalize_redis_url(settings.result_backend_url)
is_ssl = uses_tls(broker_url) or uses_tls(backend_url)
if is_ssl:
    broker_url = _with_cert_reqs(broker_url) if uses_tls(broker_url) else broker_url
    backend_url = _with_cert_reqs(backend_url) if uses_tls(backend_url) else backend_url

celery_app = Celery("sheet_importer", broker=broker_url, backend=backend_url)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": False,  # Orphaned runs are reclaimed, not replayed
    "worker_prefetch_multiplier": 1,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": IMPORTS_QUEUE,
    "task_routes": {
        "app.workers.tasks.import_products": {"queue": IMPORTS_QUEUE},
    },
}
if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config.update(
        {
            "broker_use_ssl": ssl_dict,
            "redis_backend_use_ssl": ssl_dict,
        }
    )

celery_app.conf.update(celery_config)

# Register tasks with the app
from app.workers.tasks import import_products  # noqa: E402,F401
