from datetime import datetime

import pytest

from orders import calculate_totals, next_order_number


@pytest.mark.parametrize("subtotal, tax, shipping, total", [
    (250, 45, 200, 495),
    (6000, 1080, 0, 7080),
    (5000, 900, 200, 6100),
    (5000.01, 900, 0, 5900.01),
    (99.99, 18, 200, 317.99),
])
def test_calculate_totals(subtotal, tax, shipping, total):
    totals = calculate_totals(subtotal)

    assert totals["tax"] == pytest.approx(tax, abs=0.005)
    assert totals["shipping"] == shipping
    assert totals["total"] == pytest.approx(total, abs=0.005)


@pytest.mark.parametrize("subtotal", [0.5, 1, 149.5, 4999.99, 5000, 5000.5, 12345.67, 250000])
def test_totals_add_up(subtotal):
    totals = calculate_totals(subtotal)

    assert totals["tax"] == round(subtotal * 0.18, 2)
    assert totals["shipping"] == (0 if subtotal > 5000 else 200)
    assert totals["total"] == pytest.approx(totals["subtotal"] + totals["tax"] + totals["shipping"])


def test_order_number_sequence_resets_per_day(db):
    first_day = datetime(2026, 3, 1, 23, 59)
    next_day = datetime(2026, 3, 2, 0, 1)

    assert next_order_number(first_day) == "KOLZO-20260301-0001"
    assert next_order_number(first_day) == "KOLZO-20260301-0002"
    assert next_order_number(next_day) == "KOLZO-20260302-0001"
    assert next_order_number(first_day) == "KOLZO-20260301-0003"
