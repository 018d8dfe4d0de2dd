from uuid import uuid4

import pytest

from counting.models import Severity
from counting.variance import classify, large_variances, summarize, variance_item


class TestClassify:
    @pytest.mark.parametrize(
        "expected, counted, severity",
        [
            (10, 13, Severity.LARGE),   # +3 units
            (10, 11, Severity.MINOR),   # +1 unit, 10%
            (0, 1, Severity.LARGE),     # found stock where none was expected
            (10, 10, Severity.NONE),
            (0, 0, Severity.NONE),
            (4, 5, Severity.LARGE),     # 1 unit but 25%
            (10, 8, Severity.MINOR),    # -2 units, 20% is not over the line
            (10, 7.5, Severity.LARGE),  # -2.5 units
        ],
    )
    def test_examples(self, expected, counted, severity):
        assert classify(expected, counted) == severity

    def test_fractional_open_bottle(self):
        assert classify(10.5, 10.25) == Severity.MINOR

    def test_custom_thresholds(self):
        assert classify(100, 105, large_units=10, large_ratio=0.5) == Severity.MINOR
        assert classify(100, 105, large_units=4, large_ratio=0.5) == Severity.LARGE


class TestVarianceItem:
    def test_delta_sign(self):
        item = variance_item(uuid4(), 10, 7)
        assert item.delta == -3
        assert item.severity == Severity.LARGE

    def test_missing_expected_counts_as_zero(self):
        item = variance_item(uuid4(), None, 2)
        assert item.expected == 0
        assert item.severity == Severity.LARGE

    def test_summary(self):
        items = [variance_item(uuid4(), 10, 13), variance_item(uuid4(), 10, 11), variance_item(uuid4(), 3, 3)]
        assert summarize(items) == {"none": 1, "minor": 1, "large": 1}
        assert [i.counted for i in large_variances(items)] == [13]
