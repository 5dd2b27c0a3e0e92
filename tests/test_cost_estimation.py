from __future__ import annotations

import math

import pytest

from app.domain.currency import CurrencyConverter, require_non_negative
from app.domain.errors import ValidationError
from app.services.cost_estimation_service import estimate


def test_estimate_converts_entry_amounts_with_snapshotted_rate() -> None:
    converter = CurrencyConverter(rate=303.62)
    details = estimate(15000, 2000, 1000, converter, notes="  includes solar kit ", estimated_by="ops@agro.lk")

    assert details.total_cost_entry == 18000
    assert details.total_cost == pytest.approx(18000 / 303.62)
    assert details.device_cost == pytest.approx(15000 / 303.62)
    assert details.service_charge == pytest.approx(2000 / 303.62)
    assert details.delivery_charge == pytest.approx(1000 / 303.62)
    assert details.exchange_rate == 303.62
    assert details.entry_currency == "LKR"
    assert details.canonical_currency == "USD"
    assert details.notes == "includes solar kit"
    assert details.estimated_by == "ops@agro.lk"


def test_total_equals_sum_of_components() -> None:
    details = estimate(1234.5, 99.99, 0, CurrencyConverter(rate=3.7, entry_currency="AED"))
    assert details.total_cost == pytest.approx(details.device_cost + details.service_charge + details.delivery_charge)
    assert details.total_cost_entry == pytest.approx(1334.49)
    assert details.entry_currency == "AED"


def test_zero_costs_are_allowed() -> None:
    details = estimate(0, 0, 0, CurrencyConverter(rate=303.62))
    assert details.total_cost == 0
    assert details.notes is None


@pytest.mark.parametrize(
    ("device_cost", "service_charge", "delivery_charge"),
    [
        (-1, 0, 0),
        (0, -0.01, 0),
        (0, 0, -50),
        (math.nan, 0, 0),
        (0, math.inf, 0),
    ],
)
def test_invalid_components_are_rejected(device_cost: float, service_charge: float, delivery_charge: float) -> None:
    with pytest.raises(ValidationError):
        estimate(device_cost, service_charge, delivery_charge, CurrencyConverter(rate=303.62))


@pytest.mark.parametrize("rate", [0, -303.62, math.nan, math.inf])
def test_converter_requires_positive_finite_rate(rate: float) -> None:
    with pytest.raises(ValidationError):
        CurrencyConverter(rate=rate)


def test_converter_round_trip_helpers() -> None:
    converter = CurrencyConverter(rate=303.62)
    assert converter.to_entry(converter.to_canonical(18000)) == pytest.approx(18000)


def test_require_non_negative_rejects_non_numbers() -> None:
    with pytest.raises(ValidationError):
        require_non_negative("device_cost", True)
    with pytest.raises(ValidationError):
        require_non_negative("device_cost", "100")  # type: ignore[arg-type]
    assert require_non_negative("device_cost", 7) == 7.0
