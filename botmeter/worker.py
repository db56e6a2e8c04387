"""
Dramatiq worker entry point.

Run with:
    dramatiq botmeter.worker
"""

from botmeter.config import settings
from botmeter.observability import get_logger, setup_logging, setup_tracing
from botmeter.scheduler.kv import create_redis_client
from botmeter.scheduler.registry import build_default_registry
from botmeter.tasks.broker import setup_broker

setup_logging(component="worker")
setup_tracing(component="worker")
logger = get_logger(__name__)

broker = setup_broker()

# Actors must be declared after the broker is installed
from botmeter.tasks.messenger import GoHighLevelMessenger  # noqa: E402
from botmeter.tasks.reengage import ReEngagementWorker, configure_worker  # noqa: E402

registry = build_default_registry(create_redis_client())
scheduler = registry.get(settings.scheduler_provider)

configure_worker(ReEngagementWorker(scheduler, GoHighLevelMessenger()))

logger.info(
    "worker_configured",
    scheduler_provider=settings.scheduler_provider,
    actors=sorted(broker.get_declared_actors()),
)
