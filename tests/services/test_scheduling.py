"""
Tests for cron parsing and next-run computation.
"""

from datetime import datetime, timezone

import pytest

from seo_crawler.services.scheduling import next_run_after, parse_cron


class TestCron:

    @pytest.mark.parametrize("expression", ["0 3 * * 1", "*/15 * * * *", "30 2 1 * *", "0 0 * * mon-fri"])
    def test_valid(self, expression):
        parse_cron(expression)

    @pytest.mark.parametrize("expression", ["", "* * * *", "* * * * * *", "61 * * * *", "0 25 * * *", "x y z a b"])
    def test_invalid(self, expression):
        with pytest.raises(ValueError):
            parse_cron(expression)

    @pytest.mark.parametrize(
        "expression,after,expected",
        [
            ("0 * * * *", datetime(2026, 1, 1, 12, 0), datetime(2026, 1, 1, 13, 0)),
            ("0 * * * *", datetime(2026, 1, 1, 12, 30), datetime(2026, 1, 1, 13, 0)),
            ("*/15 * * * *", datetime(2026, 1, 1, 12, 1), datetime(2026, 1, 1, 12, 15)),
            ("0 3 * * *", datetime(2026, 1, 1, 4, 0), datetime(2026, 1, 2, 3, 0)),
        ],
    )
    def test_next_run_after(self, expression, after, expected):
        after = after.replace(tzinfo=timezone.utc)
        result = next_run_after(expression, after)
        assert result == expected.replace(tzinfo=timezone.utc)

    def test_naive_input_is_utc(self):
        result = next_run_after("0 * * * *", datetime(2026, 1, 1, 12, 30))
        assert result.tzinfo is not None
