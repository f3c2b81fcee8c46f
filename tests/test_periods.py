from datetime import date

import pytest

from periods import month_period, resolve_month


def test_month_period_covers_whole_month() -> None:
    february = month_period(2024, 2)
    assert (february.slug, february.start, february.end) == (
        "2024-02",
        date(2024, 2, 1),
        date(2024, 2, 29),
    )
    assert month_period(2025, 12).end == date(2025, 12, 31)


def test_resolve_month_defaults_to_current_month() -> None:
    assert resolve_month(None, today=date(2025, 3, 17)).slug == "2025-03"
    assert resolve_month("2025-11").start == date(2025, 11, 1)
    with pytest.raises(ValueError):
        resolve_month("2025-13")
    with pytest.raises(ValueError):
        resolve_month("March")
