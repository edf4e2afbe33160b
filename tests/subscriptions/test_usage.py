"""Tests for the usage meter."""

import pytest

from dotmac.subscriptions.exceptions import InvalidUsageError
from dotmac.subscriptions.models import (
    PlanLimits,
    UsageCounters,
    UsageDelta,
    UsageDimension,
)
from dotmac.subscriptions.usage import check_limits, record_usage, reset_usage


@pytest.mark.unit
class TestRecordUsage:
    def test_adds_deltas(self):
        usage = UsageCounters(api_calls=10, storage_mb=5, users=1)

        updated = record_usage(usage, UsageDelta(api_calls=5, users=2))

        assert updated == UsageCounters(api_calls=15, storage_mb=5, users=3)
        # Original counters untouched
        assert usage.api_calls == 10

    def test_omitted_dimensions_default_to_zero(self):
        updated = record_usage(UsageCounters(storage_mb=7), UsageDelta())
        assert updated == UsageCounters(storage_mb=7)

    def test_negative_delta_rejected(self):
        with pytest.raises(InvalidUsageError) as exc_info:
            record_usage(UsageCounters(), UsageDelta(api_calls=-1, storage_mb=3, users=-2))

        assert exc_info.value.error_code == "INVALID_USAGE"
        assert exc_info.value.context["dimensions"] == ["api_calls", "users"]

    def test_reset_usage(self):
        assert reset_usage() == UsageCounters(api_calls=0, storage_mb=0, users=0)


@pytest.mark.unit
class TestCheckLimits:
    def test_compliant_usage_returns_empty_list(self):
        limits = PlanLimits(max_users=5, max_storage_mb=100, max_api_calls=1000)
        assert check_limits(UsageCounters(api_calls=999, storage_mb=99, users=4), limits) == []

    def test_usage_at_limit_is_a_violation(self):
        limits = PlanLimits(max_api_calls=1000)

        violations = check_limits(UsageCounters(api_calls=1000), limits)

        assert len(violations) == 1
        assert violations[0].dimension == UsageDimension.API_CALLS
        assert violations[0].usage == 1000
        assert violations[0].limit == 1000

    def test_unlimited_dimensions_are_exempt(self):
        limits = PlanLimits()  # everything unlimited
        usage = UsageCounters(api_calls=10**9, storage_mb=10**9, users=10**6)
        assert check_limits(usage, limits) == []

    def test_reports_every_violated_dimension(self):
        limits = PlanLimits(max_users=1, max_storage_mb=10, max_api_calls=5)

        violations = check_limits(UsageCounters(api_calls=6, storage_mb=10, users=0), limits)

        assert {v.dimension for v in violations} == {
            UsageDimension.API_CALLS,
            UsageDimension.STORAGE_MB,
        }

    def test_zero_limit_is_violated_immediately(self):
        violations = check_limits(UsageCounters(), PlanLimits(max_users=0))
        assert [v.dimension for v in violations] == [UsageDimension.USERS]
