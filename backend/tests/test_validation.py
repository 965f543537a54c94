"""Tests for step rules and the built-in flows."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fleetwizard.middleware.exceptions import InvalidStep, ResourceNotFoundError
from fleetwizard.schemas.pricing import DateRange, RateTier
from fleetwizard.schemas.wizard import LineItem
from fleetwizard.services.flows import AGREEMENT_FLOW, RESERVATION_FLOW, get_flow
from fleetwizard.services.validation import Rule, validate_step


def _line(subject_ref: str | None = "VEH-1") -> LineItem:
    return LineItem(
        line_no=1,
        subject_ref=subject_ref,
        date_range=DateRange(
            start=datetime(2026, 3, 2, 9, tzinfo=timezone.utc),
            end=datetime(2026, 3, 4, 9, tzinfo=timezone.utc),
        ),
        net_price=Decimal("100.00"),
        tax_amount=Decimal("10.00"),
        total=Decimal("110.00"),
        rate_tier_used=RateTier.DAILY,
        quantity=2,
        pricing_fingerprint="fp",
    )


@pytest.mark.unit
class TestReservationRules:
    """Rules attached to the reservation flow."""

    def test_terms_not_accepted(self):
        """Final step refuses unaccepted terms."""
        review = RESERVATION_FLOW.step(4)
        result = validate_step(review, {"terms_accepted": False})

        assert not result.is_valid
        assert result.errors == {"terms_accepted": "Terms and conditions must be accepted"}

    def test_signature_before_terms(self):
        review = RESERVATION_FLOW.step(4)
        result = validate_step(review, {"signature": "data:image/png;base64,AAAA"})
        assert result.errors["signature"] == "Accept the terms before signing"

    def test_header_required_fields(self):
        result = validate_step(RESERVATION_FLOW.step(1), {})
        assert set(result.errors) == {
            "reservation_method_id",
            "reservation_type_id",
            "customer_id",
            "price_list_id",
        }

    def test_billing_fields_only_for_other_payer(self):
        header = RESERVATION_FLOW.step(1)
        base = {
            "reservation_method_id": "m1",
            "reservation_type_id": "t1",
            "customer_id": "c1",
            "price_list_id": "p1",
        }
        assert validate_step(header, {**base, "billing_type": "CUSTOMER"}).is_valid

        result = validate_step(header, {**base, "billing_type": "OTHER", "billing_email": "not-an-email"})
        assert result.errors == {
            "billing_customer_name": "Customer name is required for billing",
            "billing_email": "Enter a valid email address",
        }

    def test_validity_date_after_entry(self):
        header = RESERVATION_FLOW.step(1)
        result = validate_step(header, {
            "entry_date": "2026-03-10",
            "validity_date_to": "2026-03-01",
        })
        assert result.errors["validity_date_to"] == "Validity date must be after entry date"

    def test_discount_out_of_range(self):
        result = validate_step(RESERVATION_FLOW.step(2), {"discount_value": "120"})
        assert "discount_value" in result.errors

    @pytest.mark.parametrize("value", ["NaN", "sNaN", "Infinity", "-inf", "abc"])
    def test_non_finite_discount_is_an_error(self, value):
        result = validate_step(RESERVATION_FLOW.step(2), {"discount_value": value})
        assert "discount_value" in result.errors

    def test_lines_step_needs_assigned_lines(self):
        lines_step = RESERVATION_FLOW.step(3)
        assert validate_step(lines_step, {}, []).errors == {"lines": "Add at least one line"}
        assert validate_step(lines_step, {}, [_line(None)]).errors == {"lines": "Every line needs a vehicle"}
        assert validate_step(lines_step, {}, [_line()]).is_valid


@pytest.mark.unit
class TestAgreementRules:
    """Rules attached to the agreement flow."""

    def test_first_message_per_field_wins(self):
        inspection = AGREEMENT_FLOW.step(3)
        result = validate_step(inspection, {"odometer_reading": 0})
        assert result.errors["fuel_level"] == "Please set fuel level (0-100%)"
        assert result.errors["odometer_reading"] == "Please enter a valid odometer reading"

    def test_warnings_do_not_block(self):
        inspection = AGREEMENT_FLOW.step(3)
        result = validate_step(inspection, {"fuel_level": 75, "odometer_reading": 12000})
        assert result.is_valid
        assert set(result.warnings) == {"odometer_photo", "fuel_gauge_photo"}

    def test_direct_source_needs_no_reference(self):
        source = AGREEMENT_FLOW.step(1)
        assert validate_step(source, {"source": "direct"}).is_valid
        assert "source_id" in validate_step(source, {"source": "reservation"}).errors

    def test_limited_mileage_needs_terms(self):
        details = AGREEMENT_FLOW.step(2)
        result = validate_step(details, {
            "customer_id": "c1",
            "agreement_type": "short_term",
            "pickup_location_id": "l1",
            "dropoff_location_id": "l2",
            "pickup_at": "2026-03-02T09:00:00Z",
            "dropoff_at": "2026-03-01T09:00:00Z",
            "mileage_package": "limited",
        })
        assert result.errors == {
            "dropoff_at": "Drop-off must be after pickup",
            "included_km": "Please specify included kilometers",
            "excess_km_rate": "Please specify excess km rate",
        }

    def test_validation_is_deterministic(self):
        details = AGREEMENT_FLOW.step(2)
        data = {"mileage_package": "limited", "pickup_at": "garbage", "dropoff_at": "2026-01-01"}
        assert validate_step(details, data) == validate_step(details, data)


@pytest.mark.unit
class TestFlows:
    def test_lookup(self):
        assert get_flow("reservation") is RESERVATION_FLOW
        assert RESERVATION_FLOW.step_count == 4
        assert AGREEMENT_FLOW.number_of("signature") == 8

    def test_unknown_flow(self):
        with pytest.raises(ResourceNotFoundError):
            get_flow("lease")

    def test_step_out_of_range(self):
        with pytest.raises(InvalidStep):
            RESERVATION_FLOW.step(0)
        with pytest.raises(InvalidStep):
            RESERVATION_FLOW.number_of("payment")


@pytest.mark.unit
class TestRules:
    def test_rule_without_check_cannot_be_built(self):
        @dataclass(frozen=True)
        class Unfinished(Rule):
            field: str = "x"
            message: str = "never"
            severity: str = "error"

        with pytest.raises(TypeError):
            Unfinished()
