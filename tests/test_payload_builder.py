"""
Tests for shipment payload construction and validation.
"""
import dataclasses
import math

import pytest

from conftest import build_items, build_order
from fulfillment_backend.core.config import PackageDefaults, ShippingConfig
from fulfillment_backend.core.exceptions import InvalidAddressError
from fulfillment_backend.models.records import AddressRecord, OrderItemRecord
from fulfillment_backend.services.fulfillment import address_from_order
from fulfillment_backend.services.payload_builder import (
    PackageDimensions,
    PayloadBuilder,
    build_reverse_pickup_payload,
    check_address,
    check_payload_sanity,
    compute_chargeable_weight,
    normalize_phone,
    normalize_pincode,
    split_name,
    validate_payload,
)


@pytest.fixture
def builder(shipping_config, clock):
    return PayloadBuilder(shipping_config, clock=clock)


@pytest.fixture
def shipping_address():
    return address_from_order(build_order())


class TestNormalization:

    @pytest.mark.parametrize("raw,expected", [
        ("+91 98765 43210", "9876543210"),
        ("098765-43210", "9876543210"),
        ("9876543210", "9876543210"),
        ("12345", "12345"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_normalize_pincode(self):
        assert normalize_pincode("560 001") == "560001"
        assert normalize_pincode("5600011") == "560001"
        assert normalize_pincode(None) == ""

    @pytest.mark.parametrize("name,expected", [
        ("Asha", ("Asha", ".")),
        ("Asha Rani Devi", ("Asha", "Rani Devi")),
        ("  ", ("Customer", ".")),
        (None, ("Customer", ".")),
    ])
    def test_split_name(self, name, expected):
        assert split_name(name) == expected


class TestChargeableWeight:

    def test_volumetric_weight_wins_for_default_parcel(self):
        dims = PackageDimensions.from_defaults(PackageDefaults())

        assert compute_chargeable_weight(1.5, dims) == 2.4

    def test_physical_weight_wins_for_heavy_parcel(self):
        assert compute_chargeable_weight(5.0, PackageDimensions(20, 15, 10)) == 5.0


class TestPrepareFulfillmentPayload:

    def test_billing_only_payload(self, builder, shipping_address):
        payload = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address)
        data = payload.to_dict()

        assert payload.shipping_is_billing is True
        assert data["billing_phone"] == "9876543210"
        assert data["billing_pincode"] == "560001"
        assert data["billing_address_2"] == "Near Metro"
        assert data["pickup_location"] == "Primary"
        assert data["order_date"] == "2026-03-01T09:00:00Z"
        assert data["weight"] == 2.4
        assert (data["length"], data["breadth"], data["height"]) == (40.0, 30.0, 10.0)
        assert data["order_total"] == data["sub_total"] == 1248.0
        assert data["cod"] == 0
        assert not any(key.startswith("shipping_") and key != "shipping_is_billing" and key != "shipping_charges"
                       for key in data)
        assert validate_payload(payload) == []
        assert check_payload_sanity(data) == []

    def test_line_item_fallbacks(self, builder, shipping_address):
        payload = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address)

        fallback = payload.order_items[1]
        assert fallback.sku == "SKU-item-000"
        assert fallback.name == "Product"
        assert payload.order_items[0].to_dict() == {
            "name": "Comic Vol 1", "sku": "CMC-001", "units": 2, "selling_price": 499.0, "discount": 0, "tax": 0,
        }

    def test_separate_billing_address(self, builder, shipping_address):
        billing = AddressRecord(
            id="addr-bill", full_name="Ravi Kumar", phone="9123456780", line1="4 Park Street",
            city="Kolkata", state="West Bengal", pincode="700016",
        )

        payload = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address, billing)
        data = payload.to_dict()

        assert payload.shipping_is_billing is False
        assert data["billing_city"] == "Kolkata"
        assert data["shipping_city"] == "Bengaluru"
        assert data["shipping_phone"] == "9876543210"
        assert data["shipping_email"] == "asha@example.com"
        assert "shipping_address_2" in data
        assert validate_payload(payload) == []

    def test_same_address_id_counts_as_billing(self, builder):
        address = AddressRecord(
            id="addr-1", full_name="Asha Rani", phone="9876543210", line1="12 MG Road",
            city="Bengaluru", state="Karnataka", pincode="560001",
        )

        payload = builder.prepare_fulfillment_payload(
            build_order(), build_items(), address, dataclasses.replace(address)
        )

        assert payload.shipping_is_billing is True

    def test_order_name_overrides_address_name(self, builder, shipping_address):
        order = build_order(shipping_name="Meera")
        address = dataclasses.replace(shipping_address, full_name="Someone Else")

        payload = builder.prepare_fulfillment_payload(order, build_items(), address)

        assert (payload.billing_customer_name, payload.billing_last_name) == ("Meera", ".")

    def test_configured_package(self, shipping_address, clock):
        config = ShippingConfig(
            enabled=True, email="a@b.c", password="x",
            package=PackageDefaults(weight_kg=3.0, length_cm=10, breadth_cm=10, height_cm=10),
        )

        payload = PayloadBuilder(config, clock=clock).prepare_fulfillment_payload(
            build_order(), build_items(), shipping_address
        )

        assert payload.weight == 3.0


class TestValidatePayload:

    def test_reports_every_violation(self, builder, shipping_address):
        order = build_order(shipping_email="")
        address = dataclasses.replace(shipping_address, phone="")

        errors = validate_payload(builder.prepare_fulfillment_payload(order, build_items(), address))

        assert 'billing_phone must be exactly 10 digits, got "empty"' in errors
        assert "billing_email must be valid (not empty and contain '@'), got \"empty\"" in errors

    def test_empty_items(self, builder, shipping_address):
        errors = validate_payload(builder.prepare_fulfillment_payload(build_order(), [], shipping_address))

        assert "order_items.length must be greater than 0" in errors

    def test_zero_quantity_and_price(self, builder, shipping_address):
        items = [OrderItemRecord(id="item-9", quantity=0, price=-5, sku="S", name="N")]

        errors = validate_payload(builder.prepare_fulfillment_payload(build_order(), items, shipping_address))

        assert "order_items[0].units must be greater than 0, got 0" in errors
        assert "order_items[0].selling_price must be greater than 0, got 0.0" in errors

    def test_bad_pincode(self, builder, shipping_address):
        address = dataclasses.replace(shipping_address, pincode="5600")

        errors = validate_payload(builder.prepare_fulfillment_payload(build_order(), build_items(), address))

        assert errors == ['billing_pincode must be exactly 6 digits, got "5600"']


class TestPayloadSanity:

    def test_detects_null_empty_and_nan(self, builder, shipping_address):
        data = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address).to_dict()
        data["billing_city"] = None
        data["billing_state"] = "  "
        data["weight"] = math.nan
        data["order_items"][0]["selling_price"] = math.inf
        del data["pickup_location"]

        errors = check_payload_sanity(data)

        assert "pickup_location is missing" in errors
        assert "billing_city is undefined or null" in errors
        assert "billing_state is empty string" in errors
        assert "weight is NaN or not finite" in errors
        assert "order_items[0].selling_price is NaN or not finite" in errors

    def test_optional_keys_may_be_empty(self, builder, shipping_address):
        data = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address).to_dict()
        data["billing_address_2"] = None
        data["billing_last_name"] = ""

        assert check_payload_sanity(data) == []

    def test_shipping_block_required_when_not_billing(self, builder, shipping_address):
        data = builder.prepare_fulfillment_payload(build_order(), build_items(), shipping_address).to_dict()
        data["shipping_is_billing"] = False

        errors = check_payload_sanity(data)

        assert "shipping_customer_name is missing" in errors


class TestAddressChecks:

    @pytest.mark.parametrize("overrides,field", [
        ({"full_name": " "}, "name"),
        ({"phone": "98765"}, "phone"),
        ({"pincode": "56000A"}, "pincode"),
        ({"line1": ""}, "line1"),
    ])
    def test_check_address(self, shipping_address, overrides, field):
        with pytest.raises(InvalidAddressError) as exc_info:
            check_address(dataclasses.replace(shipping_address, **overrides))

        assert exc_info.value.reason == f"INVALID_ADDRESS:{field}"

    def test_valid_address(self, shipping_address):
        check_address(shipping_address)


class TestReversePickupPayload:

    def test_reverse_pickup_payload(self, shipping_address):
        order = build_order(carrier_shipment_id="5678")

        payload = build_reverse_pickup_payload(order, shipping_address, build_items())

        assert payload["order_id"] == "ORD-1001-R"
        assert payload["shipment_id"] == "5678"
        assert payload["pickup_customer_name"] == "Asha"
        assert payload["pickup_customer_phone"] == "9876543210"
        assert payload["pickup_address_2"] == "Near Metro"
        assert payload["order_items"][1]["sku"] == "SKU-item-000"
