"""
Tests for the structlog processors.
"""
import pytest

from workshop_enrollment.monitoring.logging import add_service_context, mask_customer_data


class TestLogProcessors:

    @pytest.mark.unit
    def test_customer_email_is_masked(self) -> None:
        event = mask_customer_data(
            None, "info", {"event": "enrollment_reserved", "customer_email": "alice@example.com"}
        )

        assert event["customer_email"] == "a***@example.com"

    @pytest.mark.unit
    def test_claim_token_keeps_only_a_prefix(self) -> None:
        event = mask_customer_data(None, "info", {"claim_token": "abcdefghijklmnop"})

        assert event["claim_token"] == "abcdefgh..."

    @pytest.mark.unit
    def test_unrelated_fields_untouched(self) -> None:
        event = mask_customer_data(None, "info", {"workshop_id": 1, "email": "not-an-email"})

        assert event == {"workshop_id": 1, "email": "not-an-email"}

    @pytest.mark.unit
    def test_service_context(self) -> None:
        event = add_service_context(None, "info", {"event": "x"})

        assert event["app_name"] == "workshop-enrollment"
        assert event["app_env"] == "test"
