"""
Scheduler Registry - Explicit provider registration.

One registry is built at the composition root (app lifespan or worker
setup) and passed where needed; each registry caches a single scheduler
instance per provider.
"""

from collections.abc import Callable

from structlog import get_logger

from botmeter.exceptions import UnsupportedSchedulerProviderError
from botmeter.models.api import SchedulerProvider
from botmeter.scheduler.base import SchedulerService, TaskTrigger
from botmeter.scheduler.dramatiq_provider import DramatiqSchedulerService
from botmeter.scheduler.kv import KeyValueStore

logger = get_logger(__name__)

SchedulerFactory = Callable[[], SchedulerService]


class SchedulerRegistry:
    """Provider name -> scheduler factory, with one cached instance per provider."""

    def __init__(self) -> None:
        self._factories: dict[SchedulerProvider, SchedulerFactory] = {}
        self._instances: dict[SchedulerProvider, SchedulerService] = {}

    def register(self, provider: SchedulerProvider, factory: SchedulerFactory) -> None:
        """Register (or replace) the factory for a provider."""
        self._factories[provider] = factory
        self._instances.pop(provider, None)

    def providers(self) -> list[SchedulerProvider]:
        return list(self._factories)

    def create(self, provider: SchedulerProvider | str) -> SchedulerService:
        """
        Build a new scheduler for a provider.

        Raises:
            UnsupportedSchedulerProviderError: Unknown or unregistered provider
        """
        key = self._resolve(provider)
        factory = self._factories.get(key)
        if factory is None:
            raise UnsupportedSchedulerProviderError(key.value)

        logger.info("scheduler_created", provider=key.value)
        return factory()

    def get(self, provider: SchedulerProvider | str) -> SchedulerService:
        """Cached scheduler for a provider, built on first use."""
        key = self._resolve(provider)
        if key not in self._instances:
            self._instances[key] = self.create(key)
        return self._instances[key]

    def _resolve(self, provider: SchedulerProvider | str) -> SchedulerProvider:
        try:
            return SchedulerProvider(provider)
        except ValueError:
            raise UnsupportedSchedulerProviderError(str(provider)) from None


def build_default_registry(
    kv: KeyValueStore, trigger: TaskTrigger | None = None
) -> SchedulerRegistry:
    """Registry with every implemented provider registered."""
    registry = SchedulerRegistry()
    registry.register(
        SchedulerProvider.DRAMATIQ,
        lambda: DramatiqSchedulerService(kv, trigger=trigger),
    )
    return registry
