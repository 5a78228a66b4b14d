"""Unit tests for plan entitlements and billable minute rules."""

import pytest

from ringledger.billing.plans import (
    ENTITLEMENTS,
    PlanType,
    clamp_duration_seconds,
    get_entitlement,
    included_minutes,
    overage_minutes,
    parse_plan_type,
    to_billable_minutes,
)


@pytest.mark.unit
class TestBillableMinutes:
    def test_zero_duration_bills_one_minute(self):
        assert to_billable_minutes(0) == 1

    def test_sixty_one_seconds_bills_two_minutes(self):
        assert to_billable_minutes(61) == 2

    def test_exact_minute_is_not_rounded_up(self):
        assert to_billable_minutes(60) == 1
        assert to_billable_minutes(120) == 2

    def test_short_call_bills_full_minute(self):
        assert to_billable_minutes(2) == 1

    def test_negative_duration_clamped_to_minimum(self):
        assert to_billable_minutes(-300) == 1

    def test_duration_clamped_to_ceiling(self):
        assert to_billable_minutes(10_000_000, max_duration_seconds=3600) == 60

    def test_default_ceiling_is_one_day(self):
        assert to_billable_minutes(10**9) == 24 * 60

    def test_nan_duration_bills_one_minute(self):
        assert to_billable_minutes(float("nan")) == 1

    @pytest.mark.parametrize("seconds", [0, 1, 59, 60, 61, 599, 3600, 86399, 86400])
    def test_matches_closed_form(self, seconds):
        import math

        expected = max(1, math.ceil(min(seconds, 86400) / 60))
        assert to_billable_minutes(seconds, max_duration_seconds=86400) == expected


@pytest.mark.unit
class TestClampDurationSeconds:
    def test_within_range_is_unchanged(self):
        assert clamp_duration_seconds(95) == 95

    def test_huge_duration_hits_ceiling(self):
        assert clamp_duration_seconds(1e22) == 86400
        assert clamp_duration_seconds(10**22, max_duration_seconds=3600) == 3600
        assert clamp_duration_seconds(10**400) == 86400

    def test_negative_and_nan_become_zero(self):
        assert clamp_duration_seconds(-5) == 0
        assert clamp_duration_seconds(float("nan")) == 0


@pytest.mark.unit
class TestEntitlements:
    def test_included_minutes_per_plan(self):
        assert included_minutes(PlanType.NONE) == 0
        assert included_minutes(PlanType.TIER_1) == 300
        assert included_minutes(PlanType.TIER_2) == 900
        assert included_minutes(PlanType.TIER_3) == 1800

    def test_unknown_plan_resolves_to_none(self):
        assert get_entitlement("ENTERPRISE").plan_type == PlanType.NONE
        assert get_entitlement(None).included_minutes == 0

    def test_parse_plan_type_is_case_insensitive(self):
        assert parse_plan_type("tier_2") == PlanType.TIER_2
        assert parse_plan_type("") == PlanType.NONE

    def test_feature_flags_by_tier(self):
        starter = get_entitlement(PlanType.TIER_1)
        pro = get_entitlement(PlanType.TIER_2)
        local_plus = get_entitlement(PlanType.TIER_3)

        assert not starter.lead_tagging
        assert pro.lead_tagging and pro.sms_to_callers and pro.urgency_flags
        assert not pro.branded_voice
        assert local_plus.branded_voice and local_plus.priority_support
        assert local_plus.lead_tagging

    def test_every_plan_has_an_entitlement(self):
        assert set(ENTITLEMENTS) == set(PlanType)


@pytest.mark.unit
class TestOverageMinutes:
    def test_no_overage_within_allowance(self):
        assert overage_minutes(PlanType.TIER_1, 300) == 0

    def test_overage_beyond_allowance(self):
        assert overage_minutes(PlanType.TIER_1, 305) == 5

    def test_no_plan_makes_every_minute_overage(self):
        assert overage_minutes(PlanType.NONE, 12) == 12

    @pytest.mark.parametrize("plan", list(PlanType))
    def test_monotonic_in_minutes_used(self, plan):
        values = [overage_minutes(plan, used) for used in range(0, 2500, 7)]
        assert values == sorted(values)
        assert all(value >= 0 for value in values)
