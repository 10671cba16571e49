"""
Tests for internal shipping rate calculation.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment_backend.core.config import ShippingConfig
from fulfillment_backend.services.carrier_client import CarrierResponse
from fulfillment_backend.services.payload_builder import PackageDimensions
from fulfillment_backend.services.rate_calculator import RateCalculator


def serviceability(*couriers, status=200):
    return CarrierResponse(
        http_status=status,
        raw_body={"status": status, "data": {"available_courier_companies": list(couriers)}},
    )


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.check_serviceability = AsyncMock(return_value=serviceability(
        {"courier_name": "Delhivery", "courier_company_id": 10, "freight_charge": 85.5,
         "cod_charges": 30, "estimated_delivery_days": "4"},
        {"courier_name": "Xpressbees", "courier_company_id": "12", "freight_charge": 70.0,
         "cod_charges": 25, "estimated_delivery_days": "3"},
        {"courier_name": "Ekart", "courier_company_id": 14, "freight_charge": 70.0,
         "cod_charges": 10, "estimated_delivery_days": "5"},
    ))
    return client


@pytest.fixture
def calculator(shipping_config, mock_client):
    return RateCalculator(shipping_config, mock_client)


class TestCalculateShippingRate:

    @pytest.mark.asyncio
    async def test_picks_cheapest_first_on_ties(self, calculator):
        result = await calculator.calculate_shipping_rate("560001")

        assert result.success is True
        assert result.cost == 70.0
        assert result.courier_name == "Xpressbees"
        assert result.courier_company_id == 12
        assert result.estimated_days == 3

    @pytest.mark.asyncio
    async def test_cod_charges_added_only_for_cod(self, calculator, mock_client):
        result = await calculator.calculate_shipping_rate("560001", is_cod=True)

        assert result.cost == 95.0
        params = mock_client.check_serviceability.await_args.args[0]
        assert params["cod"] == 1

    @pytest.mark.asyncio
    async def test_query_uses_chargeable_weight(self, calculator, mock_client):
        await calculator.calculate_shipping_rate("560001")

        params = mock_client.check_serviceability.await_args.args[0]
        assert params == {
            "pickup_postcode": "110001",
            "delivery_postcode": "560001",
            "weight": 2.4,
            "length": 40.0,
            "breadth": 30.0,
            "height": 10.0,
            "cod": 0,
        }

    @pytest.mark.asyncio
    async def test_explicit_parcel(self, calculator, mock_client):
        await calculator.calculate_shipping_rate("560001", weight=4.0, dimensions=PackageDimensions(10, 10, 10))

        params = mock_client.check_serviceability.await_args.args[0]
        assert params["weight"] == 4.0
        assert params["length"] == 10

    @pytest.mark.asyncio
    async def test_invalid_pincode(self, calculator, mock_client):
        result = await calculator.calculate_shipping_rate("56001")

        assert result.success is False
        assert result.cost == 0.0
        assert result.error == "Invalid delivery pincode"
        mock_client.check_serviceability.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_credentials(self, mock_client):
        calculator = RateCalculator(ShippingConfig(enabled=True), mock_client)

        result = await calculator.calculate_shipping_rate("560001")

        assert result.error == "Shiprocket credentials not configured"
        mock_client.check_serviceability.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_carrier_error_status(self, calculator, mock_client):
        mock_client.check_serviceability.return_value = CarrierResponse(http_status=500, raw_body={})

        result = await calculator.calculate_shipping_rate("560001")

        assert result.success is False
        assert result.error == "API returned 500"

    @pytest.mark.asyncio
    async def test_no_couriers(self, calculator, mock_client):
        mock_client.check_serviceability.return_value = serviceability()

        result = await calculator.calculate_shipping_rate("560001")

        assert result.error == "No couriers available"

    @pytest.mark.asyncio
    async def test_client_exception_is_reported(self, calculator, mock_client):
        mock_client.check_serviceability.side_effect = RuntimeError("boom")

        result = await calculator.calculate_shipping_rate("560001")

        assert result.success is False
        assert result.error == "boom"


class TestGetAllShippingRates:

    @pytest.mark.asyncio
    async def test_sorted_by_cost(self, calculator):
        rates = await calculator.get_all_shipping_rates("560001")

        assert rates.success is True
        assert [q.courier_name for q in rates.couriers] == ["Xpressbees", "Ekart", "Delhivery"]
        assert rates.couriers[-1].cod_charges == 30.0

    @pytest.mark.asyncio
    async def test_failure(self, calculator, mock_client):
        mock_client.check_serviceability.return_value = serviceability(status=404)

        rates = await calculator.get_all_shipping_rates("560001")

        assert rates.success is False
        assert rates.couriers == []
