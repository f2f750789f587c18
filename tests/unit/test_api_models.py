"""Tests for promptly.api.models - Pydantic request models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from promptly.api.models import (
    AddressRequest,
    CompetitionCreateRequest,
    GenerationAuthorizeRequest,
    GenerationRecordRequest,
    StatusUpdateRequest,
    TshirtBonusRequest,
    UpdateShippingRequest,
    VerifyPurchaseRequest,
)
from promptly.core.orders import OrderStatus, ShippingMethod


class TestCompetitionCreateRequest:
    def test_valid(self):
        req = CompetitionCreateRequest(
            theme="Spooky",
            start_date=datetime(2026, 10, 1, tzinfo=timezone.utc),
            end_date=datetime(2026, 10, 31, tzinfo=timezone.utc),
        )
        assert req.is_active is True
        assert req.id is None

    def test_end_before_start(self):
        with pytest.raises(ValidationError):
            CompetitionCreateRequest(
                theme="Backwards",
                start_date=datetime(2026, 10, 31, tzinfo=timezone.utc),
                end_date=datetime(2026, 10, 1, tzinfo=timezone.utc),
            )

    def test_naive_and_utc_strings_compare(self):
        req = CompetitionCreateRequest(
            theme="Mixed", start_date="2026-10-01T00:00:00", end_date="2026-10-31T00:00:00Z"
        )
        assert req.start_date.tzinfo is None
        assert req.end_date.tzinfo is not None

    def test_naive_end_before_utc_start(self):
        with pytest.raises(ValidationError, match="end_date must be after start_date"):
            CompetitionCreateRequest(
                theme="Mixed", start_date="2026-10-31T00:00:00Z", end_date="2026-10-01T00:00:00"
            )

    def test_empty_theme(self):
        with pytest.raises(ValidationError):
            CompetitionCreateRequest(
                theme="",
                start_date=datetime(2026, 10, 1, tzinfo=timezone.utc),
                end_date=datetime(2026, 10, 2, tzinfo=timezone.utc),
            )


class TestOrderRequests:
    def test_shipping_method_enum(self):
        assert UpdateShippingRequest(shipping_method="Budget").shipping_method is ShippingMethod.BUDGET
        with pytest.raises(ValidationError):
            UpdateShippingRequest(shipping_method="Teleport")

    def test_status_enum(self):
        assert StatusUpdateRequest(status="SHIPPED").status is OrderStatus.SHIPPED
        with pytest.raises(ValidationError):
            StatusUpdateRequest(status="LOST")

    def test_country_code_length(self):
        with pytest.raises(ValidationError):
            AddressRequest(
                name="Ada",
                address_line1="1 Road",
                city="London",
                postal_code="N1",
                country_code="GBR",
            )


class TestCreditAndCompetitionRequests:
    def test_tshirt_count_defaults_to_one(self):
        assert TshirtBonusRequest(order_id=3).tshirt_count == 1

    def test_tshirt_count_positive(self):
        with pytest.raises(ValidationError):
            TshirtBonusRequest(order_id=3, tshirt_count=0)

    def test_verify_purchase_optional_fields(self):
        req = VerifyPurchaseRequest(order_id=9)
        assert req.design_id is None
        assert req.competition_id is None


class TestGenerationRequests:
    def test_status_defaults_to_completed(self):
        assert GenerationRecordRequest(prompt="a cat", model="flux-dev").status == "COMPLETED"

    def test_pending_status_rejected(self):
        with pytest.raises(ValidationError):
            GenerationRecordRequest(prompt="a cat", model="flux-dev", status="PENDING")

    def test_session_optional_for_authorize(self):
        assert GenerationAuthorizeRequest(model="nano-banana").session_id is None
