"""
Tests for relay configuration and validation.
"""

import pytest
from pydantic import ValidationError

from core.config import AdmissionConfig, DeliveryConfig, TrackingSettings
from core.exceptions import ConfigurationError


class TestDeliveryConfig:

    def test_defaults(self):
        config = DeliveryConfig()
        assert config.max_attempts == 3
        assert config.retry_backoff_seconds == (10, 60, 300)
        assert config.lease_ttl_seconds >= config.delivery_timeout_seconds

    def test_backoff_for_attempt(self):
        config = DeliveryConfig()
        assert config.backoff_for(1) == 10
        assert config.backoff_for(2) == 60
        assert config.backoff_for(3) == 300
        assert config.backoff_for(7) == 300

    def test_lease_shorter_than_timeout_rejected(self):
        with pytest.raises(ConfigurationError):
            DeliveryConfig(delivery_timeout_seconds=30, lease_ttl_seconds=10)

    def test_non_monotonic_backoff_rejected(self):
        with pytest.raises(ConfigurationError):
            DeliveryConfig(retry_backoff_seconds=(60, 10))

    def test_empty_backoff_rejected(self):
        with pytest.raises(ConfigurationError):
            DeliveryConfig(retry_backoff_seconds=())

    def test_chunk_size_capped_at_100(self):
        with pytest.raises(ValidationError):
            DeliveryConfig(batch_chunk_size=500)

    def test_frozen(self):
        config = DeliveryConfig()
        with pytest.raises(ValidationError):
            config.max_attempts = 5


class TestTrackingSettings:

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("TRACKING_RETRY_BACKOFF_SECONDS", "5, 15,45")
        monkeypatch.setenv("TRACKING_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("TRACKING_DEDUP_WINDOW_MINUTES", "30")
        monkeypatch.setenv("TRACKING_ADVANCED_MATCHING", "false")
        settings = TrackingSettings(_env_file=None)

        delivery = settings.delivery_config()
        assert delivery.retry_backoff_seconds == (5, 15, 45)
        assert delivery.max_attempts == 4

        admission = settings.admission_config()
        assert isinstance(admission, AdmissionConfig)
        assert admission.dedup_window_minutes == 30
        assert admission.enrichment_enabled is False

    def test_invalid_backoff_string(self, monkeypatch):
        monkeypatch.setenv("TRACKING_RETRY_BACKOFF_SECONDS", "10,soon")
        settings = TrackingSettings(_env_file=None)
        with pytest.raises(ConfigurationError):
            settings.delivery_config()

    def test_unknown_driver_rejected(self, monkeypatch):
        monkeypatch.setenv("TRACKING_DRIVER", "carrier-pigeon")
        with pytest.raises(ValidationError):
            TrackingSettings(_env_file=None)
