"""
Tests for log event processing.
"""
import pytest

from eventpay.config import Settings
from eventpay.monitoring.logging import AppContext, redact_sensitive


class TestLogProcessors:
    """Test suite for the structlog processors."""

    @pytest.mark.unit
    def test_sensitive_values_are_masked(self) -> None:
        event = redact_sensitive(
            None,
            "info",
            {
                "event": "momo_request_to_pay",
                "payer_msisdn": "233241234567",
                "client_secret": "pi_1_secret_abc",
                "authorization": "abc",
                "amount": 5000,
            },
        )

        assert event["payer_msisdn"] == "***4567"
        assert event["client_secret"] == "***_abc"
        assert event["authorization"] == "***"
        assert event["amount"] == 5000

    @pytest.mark.unit
    def test_missing_values_stay_missing(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "msisdn": None})

        assert event["msisdn"] is None

    @pytest.mark.unit
    def test_app_context(self, test_settings: Settings) -> None:
        event = AppContext(test_settings)(None, "info", {"event": "x"})

        assert event["app_name"] == "eventpay-settlement-test"
        assert event["app_env"] == "test"
