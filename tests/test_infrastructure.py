"""Tests for configuration loading, event delivery and locks."""

import asyncio

import httpx
import pytest

from slaengine.config import SLAClassification, SLAEventType
from slaengine.core import ConfigurationException, ExternalServiceException
from slaengine.shared.infrastructure.locks import KeyedLock
from slaengine.sla.domain import SLAConfig, SLAEvent
from slaengine.sla.infrastructure.external import (
    CircuitBreaker, CircuitState, SLAConfigManager, WebhookNotificationChannel
)

from tests.conftest import at


def make_event() -> SLAEvent:
    return SLAEvent(
        ticket_id="HK-1",
        department_id="hk",
        event_type=SLAEventType.BREACHED,
        occurred_at=at(31),
        old_classification=SLAClassification.AT_RISK,
        new_classification=SLAClassification.BREACHED,
    )


class TestSLAConfigManager:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "sla_config.yaml"
        path.write_text(
            "department_templates:\n"
            "  spa:\n"
            "    target_minutes: 90\n"
            "    start_trigger: ON_ACCEPT\n"
            "exception_reasons:\n"
            "  - code: POWER_OUTAGE\n"
            "    label: Power outage\n"
            "    category: INFRASTRUCTURE\n"
        )

        manager = SLAConfigManager()
        config = manager.load(path)

        assert config.template_for("SPA").target_minutes == 90
        assert config.template_for("housekeeping").target_minutes == 30
        assert config.get_exception_reason("POWER_OUTAGE").category == "INFRASTRUCTURE"
        assert config.get_exception_reason("VENDOR_DELAY") is None

    def test_missing_file_uses_defaults(self, tmp_path):
        config = SLAConfigManager().load(tmp_path / "absent.yaml")

        assert config.get_exception_reason("VENDOR_DELAY") is not None
        assert config.template_for("UNKNOWN").target_minutes == 30

    def test_default_config_carries_standard_catalogs(self):
        config = SLAConfig()

        assert config.get_exception_reason("VENDOR_DELAY").category == "EXTERNAL_DEPENDENCY"
        assert config.get_block_reason("GUEST_INSIDE").label == "Guest inside the room"
        assert config.get_block_reason("guest asleep") is None
        assert config.template_for("SECURITY").target_minutes == 20

    def test_block_reasons_from_yaml_replace_defaults(self, tmp_path):
        path = tmp_path / "sla_config.yaml"
        path.write_text(
            "block_reasons:\n"
            "  - code: DO_NOT_DISTURB\n"
            "    label: Do not disturb sign\n"
            "  - code: ROOM_LOCKED\n"
            "    label: Room locked\n"
            "    is_active: false\n"
        )

        config = SLAConfigManager().load(path)

        assert config.get_block_reason("DO_NOT_DISTURB").label == "Do not disturb sign"
        assert config.get_block_reason("ROOM_LOCKED").is_active is False
        assert config.get_block_reason("GUEST_INSIDE") is None

    def test_invalid_file_rejected(self, tmp_path):
        path = tmp_path / "sla_config.yaml"
        path.write_text("department_templates:\n  SPA:\n    target_minutes: -5\n")

        with pytest.raises(ConfigurationException):
            SLAConfigManager().load(path)

    def test_bad_reload_keeps_previous_config(self, tmp_path):
        path = tmp_path / "sla_config.yaml"
        path.write_text("department_templates:\n  SPA:\n    target_minutes: 90\n")
        manager = SLAConfigManager()
        manager.load(path)

        path.write_text("department_templates: [unclosed\n")

        assert manager.reload() is False
        assert manager.get_config().template_for("SPA").target_minutes == 90


class TestWebhookNotificationChannel:
    async def test_posts_event_with_idempotency_key(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        event = make_event()
        channel = WebhookNotificationChannel(
            "https://paging.example.com/sla",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        await channel.deliver(event)
        await channel.close()

        assert len(requests) == 1
        assert requests[0].headers["Idempotency-Key"] == event.id
        assert b'"event_type":"BREACHED"' in requests[0].content.replace(b" ", b"")

    async def test_retries_then_fails(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        channel = WebhookNotificationChannel(
            "https://paging.example.com/sla",
            max_retries=3,
            backoff_seconds=0,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ExternalServiceException):
            await channel.deliver(make_event())
        await channel.close()

        assert len(calls) == 3

    async def test_open_circuit_rejects_without_calling(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        channel = WebhookNotificationChannel(
            "https://paging.example.com/sla",
            circuit_breaker=breaker,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ExternalServiceException):
            await channel.deliver(make_event())
        await channel.close()

        assert calls == []


class TestCircuitBreaker:
    def test_opens_after_threshold_and_recovers(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0)

        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()

        # recovery_timeout=0 moves straight to half-open
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_stays_open_until_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()


class TestKeyedLock:
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.acquire("hk"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    async def test_different_keys_do_not_contend(self):
        locks = KeyedLock()

        async with locks.acquire("hk"):
            assert locks.locked("hk")
            async with locks.acquire("eng"):
                assert locks.locked("eng")

        assert not locks.locked("hk")
