"""
Tests for category payload validation.

Property-based tests cover the identifier formats; example tests cover the
per-category required fields and derived service codes.
"""

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from fulfillment.exceptions import InvalidPayloadError
from fulfillment.models.api import ServiceCategory
from fulfillment.models.payloads import (
    INVENTORY_POOLS,
    PAYLOAD_MODELS,
    AirtimeToCashPayload,
    CategoryPayload,
    PinOrderPayload,
    load_payload,
    validate_payload,
)

# ============================================================================
# Hypothesis Strategies
# ============================================================================

eleven_digits = st.from_regex(r"[0-9]{11}", fullmatch=True)
wrong_length_digits = st.from_regex(r"[0-9]{1,10}|[0-9]{12,20}", fullmatch=True)
with_letter = st.from_regex(r"[0-9]{5}[a-zA-Z][0-9]{5}", fullmatch=True)
exam_types = st.sampled_from(list(INVENTORY_POOLS))


class TestBVNPayloadProperties:
    """Property-based tests for BVN identifiers."""

    @given(eleven_digits)
    @settings(max_examples=100)
    def test_eleven_digit_bvn_accepted(self, bvn):
        payload = validate_payload(ServiceCategory.BVN, {"bvn": bvn})
        assert payload.bvn == bvn
        assert payload.service_code == "bvn_retrieval"

    @given(wrong_length_digits)
    @settings(max_examples=100)
    def test_wrong_length_bvn_rejected(self, bvn):
        with pytest.raises(InvalidPayloadError) as exc_info:
            validate_payload(ServiceCategory.BVN, {"bvn": bvn})
        assert exc_info.value.category == "bvn"

    @given(with_letter)
    @settings(max_examples=50)
    def test_non_numeric_bvn_rejected(self, bvn):
        with pytest.raises(InvalidPayloadError):
            validate_payload(ServiceCategory.BVN, {"bvn": bvn})


class TestPinOrderPayloadProperties:
    """Property-based tests for PIN orders."""

    @given(exam_types)
    @settings(max_examples=20)
    def test_pool_is_exam_type(self, exam_type):
        payload = validate_payload(ServiceCategory.PIN_ORDER, {"exam_type": exam_type})
        assert payload.inventory_pool == exam_type
        assert payload.service_code == f"{exam_type}_pin"

    @given(st.text(min_size=1, max_size=20).filter(lambda x: x.strip() not in INVENTORY_POOLS))
    @settings(max_examples=50)
    def test_unknown_exam_type_rejected(self, exam_type):
        with pytest.raises(InvalidPayloadError):
            validate_payload(ServiceCategory.PIN_ORDER, {"exam_type": exam_type})


class TestCategoryPayloads:
    """Example-based tests for each category."""

    def test_every_category_has_a_schema(self):
        assert set(PAYLOAD_MODELS) == set(ServiceCategory)

    def test_base_payload_is_abstract(self):
        with pytest.raises(TypeError):
            CategoryPayload()

    @pytest.mark.parametrize("model", list(PAYLOAD_MODELS.values()))
    def test_every_schema_names_a_service_code(self, model):
        assert "service_code" not in model.__abstractmethods__

    def test_unknown_fields_rejected(self):
        with pytest.raises(InvalidPayloadError) as exc_info:
            validate_payload(ServiceCategory.BVN, {"bvn": "12345678901", "surprise": True})
        assert any("surprise" in e for e in exc_info.value.errors)

    def test_bvn_service_type_selects_code(self):
        payload = validate_payload(
            ServiceCategory.BVN, {"bvn": "12345678901", "service_type": "digital_card"}
        )
        assert payload.service_code == "bvn_digital_card"

    def test_education_requires_registration_and_year(self):
        with pytest.raises(InvalidPayloadError) as exc_info:
            validate_payload(ServiceCategory.EDUCATION, {"exam_body": "waec"})
        joined = " ".join(exc_info.value.errors)
        assert "registration_number" in joined
        assert "exam_year" in joined

    def test_education_rejects_future_year(self):
        next_year = datetime.now(UTC).year + 1
        with pytest.raises(InvalidPayloadError):
            validate_payload(
                ServiceCategory.EDUCATION,
                {"exam_body": "neco", "registration_number": "NECO12345", "exam_year": next_year},
            )

    def test_education_service_code(self):
        payload = validate_payload(
            ServiceCategory.EDUCATION,
            {"exam_body": "jamb", "registration_number": "JAMB-99881", "exam_year": 2023},
        )
        assert payload.service_code == "jamb_result"
        assert payload.inventory_pool is None

    def test_identity_validation_requires_nin(self):
        with pytest.raises(InvalidPayloadError) as exc_info:
            validate_payload(ServiceCategory.IDENTITY, {"service_type": "nin_validation"})
        assert any("nin is required" in e for e in exc_info.value.errors)

    def test_identity_ipe_requires_tracking_id(self):
        with pytest.raises(InvalidPayloadError):
            validate_payload(ServiceCategory.IDENTITY, {"service_type": "ipe_clearance"})

        payload = validate_payload(
            ServiceCategory.IDENTITY, {"service_type": "ipe_clearance", "tracking_id": "TRK-00123"}
        )
        assert payload.service_code == "ipe_clearance"

    def test_cac_names_are_stripped_and_bounded(self):
        payload = validate_payload(
            ServiceCategory.CAC,
            {
                "service_type": "business_name",
                "proposed_names": ["  Ade Ventures ", "Ade Global"],
                "business_nature": "General merchandise",
            },
        )
        assert payload.proposed_names == ["Ade Ventures", "Ade Global"]
        assert payload.service_code == "cac_business_name"

        with pytest.raises(InvalidPayloadError):
            validate_payload(
                ServiceCategory.CAC,
                {
                    "service_type": "business_name",
                    "proposed_names": ["A", "B", "C", "D"],
                    "business_nature": "Trading",
                },
            )

    def test_airtime_processed_amount_is_airtime_value(self):
        payload = validate_payload(
            ServiceCategory.AIRTIME_TO_CASH,
            {
                "network": "mtn",
                "phone_number": "08031234567",
                "airtime_amount_minor": 500_000,
                "bank_name": "First Bank",
                "account_number": "0123456789",
                "account_name": "Ada Obi",
            },
        )
        assert isinstance(payload, AirtimeToCashPayload)
        assert payload.processed_amount_minor(0) == 500_000

    def test_agent_categories_process_their_fee(self):
        payload = validate_payload(ServiceCategory.BVN, {"bvn": "12345678901"})
        assert payload.processed_amount_minor(200) == 200


class TestLoadPayload:
    """Tests for rebuilding stored payloads."""

    def test_load_payload_skips_validation(self):
        """Stored payloads are trusted; date-relative checks are not re-run."""
        payload = load_payload(ServiceCategory.PIN_ORDER, {"exam_type": "neco"})
        assert isinstance(payload, PinOrderPayload)
        assert payload.inventory_pool == "neco"

    def test_round_trip_through_storage_form(self):
        validated = validate_payload(ServiceCategory.PIN_ORDER, {"exam_type": "waec"})
        stored = validated.model_dump(mode="json", exclude_none=True)
        assert stored == {"exam_type": "waec"}
        assert load_payload(ServiceCategory.PIN_ORDER, stored).service_code == "waec_pin"
