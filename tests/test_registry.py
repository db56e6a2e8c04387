"""
Tests for SchedulerRegistry.
"""

from unittest.mock import MagicMock

import pytest
from conftest import InMemoryKV, RecordingTrigger

from botmeter.exceptions import UnsupportedSchedulerProviderError
from botmeter.models.api import SchedulerProvider
from botmeter.scheduler.base import SchedulerService
from botmeter.scheduler.dramatiq_provider import DramatiqSchedulerService
from botmeter.scheduler.registry import SchedulerRegistry, build_default_registry


class TestSchedulerRegistry:
    def test_default_registry_builds_dramatiq_scheduler(
        self, kv: InMemoryKV, trigger: RecordingTrigger
    ) -> None:
        registry = build_default_registry(kv, trigger=trigger)

        scheduler = registry.get("dramatiq")

        assert isinstance(scheduler, DramatiqSchedulerService)
        assert scheduler.kv is kv
        assert scheduler.trigger is trigger
        assert registry.providers() == [SchedulerProvider.DRAMATIQ]

    def test_get_caches_one_instance_per_provider(self, kv: InMemoryKV) -> None:
        registry = build_default_registry(kv)

        assert registry.get(SchedulerProvider.DRAMATIQ) is registry.get("dramatiq")

    def test_create_builds_fresh_instances(self, kv: InMemoryKV) -> None:
        registry = build_default_registry(kv)

        assert registry.create("dramatiq") is not registry.create("dramatiq")

    def test_known_but_unregistered_provider_rejected(self, kv: InMemoryKV) -> None:
        registry = build_default_registry(kv)

        with pytest.raises(UnsupportedSchedulerProviderError) as exc_info:
            registry.get(SchedulerProvider.CELERY)

        assert exc_info.value.provider == "celery"

    def test_unknown_provider_rejected(self) -> None:
        registry = SchedulerRegistry()

        with pytest.raises(UnsupportedSchedulerProviderError):
            registry.create("cron")

    def test_registering_again_replaces_cached_instance(self) -> None:
        registry = SchedulerRegistry()
        first = MagicMock(spec=SchedulerService)
        second = MagicMock(spec=SchedulerService)

        registry.register(SchedulerProvider.APSCHEDULER, lambda: first)
        assert registry.get("apscheduler") is first

        registry.register(SchedulerProvider.APSCHEDULER, lambda: second)
        assert registry.get("apscheduler") is second
