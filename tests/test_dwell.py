"""Tests for the minimum-dwell rule."""
from datetime import timedelta

from rotation.rules.dwell import DwellRule

from conftest import T0


class TestDwellRule:
    """Tests for DwellRule.allows / remaining."""

    def test_no_previous_transition(self):
        """With nothing on record any change is allowed."""
        assert DwellRule(7).allows(None, T0) is True

    def test_blocks_within_dwell(self):
        """A change three days after the last one is held back."""
        rule = DwellRule(7)
        assert rule.allows(T0, T0 + timedelta(days=3)) is False
        assert rule.remaining(T0, T0 + timedelta(days=3)) == timedelta(days=4)

    def test_allows_at_boundary(self):
        """Exactly min_dwell_days later is allowed."""
        rule = DwellRule(7)
        assert rule.allows(T0, T0 + timedelta(days=7)) is True
        assert rule.remaining(T0, T0 + timedelta(days=7)) == timedelta(0)

    def test_fractional_days(self):
        """Fractional dwell periods are supported."""
        rule = DwellRule(0.5)
        assert rule.allows(T0, T0 + timedelta(hours=11)) is False
        assert rule.allows(T0, T0 + timedelta(hours=12)) is True

    def test_disabled(self):
        """A zero dwell never blocks."""
        assert DwellRule(0).allows(T0, T0) is True
