"""
Dramatiq broker setup.

Actors bind to the global broker when their module is imported, so the
broker has to be configured first.
"""

import dramatiq
from dramatiq import broker as dramatiq_broker
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import AsyncIO

from botmeter.config import settings


def setup_broker(redis_url: str | None = None) -> dramatiq.Broker:
    """Redis broker with asyncio actor support, installed as the global broker."""
    broker = RedisBroker(url=redis_url or settings.redis_url)
    broker.add_middleware(AsyncIO())
    dramatiq.set_broker(broker)
    return broker


def ensure_broker() -> dramatiq.Broker:
    """Keep an already installed broker (tests install a StubBroker), else set one up."""
    if dramatiq_broker.global_broker is not None:
        return dramatiq_broker.global_broker
    return setup_broker()
