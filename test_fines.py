from datetime import datetime, timedelta

import pytest

from fines import calculate_fine

DUE = datetime(2025, 3, 1, 12, 0, 0)


@pytest.mark.parametrize(
    "returned_at, expected",
    [
        (DUE, 0.0),
        (DUE - timedelta(days=1), 0.0),
        (DUE + timedelta(days=1), 0.50),
        (DUE + timedelta(days=3), 1.50),
        (DUE + timedelta(days=40), 20.00),
        (DUE + timedelta(days=50), 20.00),
    ],
)
def test_fine_table(returned_at, expected):
    assert calculate_fine(DUE, returned_at) == expected


def test_partial_day_counts_as_a_full_day():
    assert calculate_fine(DUE, DUE + timedelta(minutes=1)) == 0.50
    assert calculate_fine(DUE, DUE + timedelta(days=2, hours=1)) == 1.50


def test_rate_and_cap_are_configurable(monkeypatch):
    assert calculate_fine(DUE, DUE + timedelta(days=4), rate=1.25, cap=100) == 5.00
    assert calculate_fine(DUE, DUE + timedelta(days=4), rate=1.25, cap=3) == 3.00

    import config

    monkeypatch.setattr(config, "FINE_RATE_PER_DAY", 2.0)
    monkeypatch.setattr(config, "FINE_CAP", 5.0)
    assert calculate_fine(DUE, DUE + timedelta(days=2)) == 4.0
    assert calculate_fine(DUE, DUE + timedelta(days=10)) == 5.0
