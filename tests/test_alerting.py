"""
Tests for AlertService - severity filtering, dedupe and webhook delivery.
"""
from unittest.mock import MagicMock, patch

import pytest

from infra.alerting import AlertConfig, AlertService, AlertSeverity


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_service(clock=None, **overrides):
    params = dict(
        enabled=True,
        webhook_url="https://hooks.example.test/alert",
        min_severity=AlertSeverity.WARNING,
        dry_run=True,
        dedupe_seconds=60.0,
    )
    params.update(overrides)
    return AlertService(AlertConfig(**params), clock=clock or FakeClock())


class TestFiltering:
    def test_below_min_severity_dropped(self):
        service = make_service()

        assert service.notify(AlertSeverity.INFO, "cycle done", "ok") is False
        assert service.notify(AlertSeverity.WARNING, "divergence", "BTC") is True

    def test_disabled_service_sends_nothing(self):
        service = make_service(enabled=False)

        assert not service.is_enabled()
        assert service.notify(AlertSeverity.CRITICAL, "halt", "daily loss") is False

    def test_enabled_without_webhook_is_disabled(self):
        service = make_service(webhook_url=None, dry_run=False)

        assert not service.is_enabled()

    def test_dry_run_works_without_webhook(self):
        service = make_service(webhook_url=None, dry_run=True)

        assert service.notify(AlertSeverity.CRITICAL, "halt", "daily loss")


class TestDedupe:
    def test_identical_alert_suppressed_within_window(self):
        clock = FakeClock()
        service = make_service(clock)

        assert service.notify(AlertSeverity.CRITICAL, "halt", "daily loss")
        clock.now += 30
        assert not service.notify(AlertSeverity.CRITICAL, "halt", "daily loss")
        clock.now += 31
        assert service.notify(AlertSeverity.CRITICAL, "halt", "daily loss")

    def test_different_message_not_suppressed(self):
        service = make_service()

        assert service.notify(AlertSeverity.WARNING, "divergence", "BTC")
        assert service.notify(AlertSeverity.WARNING, "divergence", "ETH")


class TestDelivery:
    def test_webhook_payload(self):
        service = make_service(dry_run=False)
        response = MagicMock(status=200)
        response.__enter__.return_value = response

        with patch("infra.alerting.urllib.request.urlopen", return_value=response) as urlopen:
            service.notify(AlertSeverity.CRITICAL, "Circuit breaker HALTED", "daily loss", {"status": "HALTED"})

        request = urlopen.call_args[0][0]
        assert request.full_url == "https://hooks.example.test/alert"
        body = request.data.decode("utf-8")
        assert "[CRITICAL] Circuit breaker HALTED" in body
        assert "HALTED" in body

    def test_delivery_failure_is_logged_not_raised(self):
        import urllib.error

        service = make_service(dry_run=False)
        with patch("infra.alerting.urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            assert service.notify(AlertSeverity.CRITICAL, "halt", "daily loss")


class TestFromConfig:
    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example.test/env")

        service = AlertService.from_config(True, {"webhook_url": "${ALERT_WEBHOOK_URL}", "min_severity": "critical"})

        assert service.is_enabled()
        assert service._config.webhook_url == "https://hooks.example.test/env"
        assert service._config.min_severity == AlertSeverity.CRITICAL

    def test_unknown_severity_defaults_to_warning(self):
        assert AlertSeverity.from_string("loud") == AlertSeverity.WARNING

    @pytest.mark.parametrize("raw", [None, {}])
    def test_missing_config(self, raw, monkeypatch):
        monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)

        assert not AlertService.from_config(True, raw).is_enabled()
