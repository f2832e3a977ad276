from datetime import datetime, timedelta

import pytest
import pytz

from wacraft_reminders.core.errors import ConfigurationError
from wacraft_reminders.core.models import Contact, Rule
from wacraft_reminders.rules import RuleSet

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=pytz.UTC)

RULES = [
    Rule("12h", timedelta(hours=12)),
    Rule("48h", timedelta(hours=48)),
    Rule("24h", timedelta(hours=24)),
]


def _contact(hours_inactive: float) -> Contact:
    return Contact("c-1", "Ana", NOW - timedelta(hours=hours_inactive))


def test_escalation_picks_largest_reached_threshold():
    rule = RuleSet(RULES).match(_contact(50), NOW)

    assert rule is not None and rule.name == "48h"


@pytest.mark.parametrize(
    "hours, expected",
    [(11.9, None), (12, "12h"), (23, "12h"), (24, "24h"), (47.99, "24h"), (48, "48h")],
)
def test_threshold_boundaries(hours, expected):
    rule = RuleSet(RULES).match(_contact(hours), NOW)

    assert (rule.name if rule else None) == expected


def test_fulfilled_top_rule_consumes_shorter_rules():
    fulfilled = {"48h"}

    rule = RuleSet(RULES).match(_contact(50), NOW, lambda r: r.name in fulfilled)

    assert rule is None


def test_next_escalation_fires_after_lower_rule():
    fulfilled = {"12h", "24h"}

    rule = RuleSet(RULES).match(_contact(50), NOW, lambda r: r.name in fulfilled)

    assert rule.name == "48h"


def test_failed_rule_is_passed_over_without_consuming_lower_rules():
    rule = RuleSet(RULES).match(_contact(50), NOW, lambda r: False, lambda r: r.name == "48h")

    assert rule.name == "24h"


def test_failed_rule_does_not_undo_consumption_by_fulfilled_rule():
    rule = RuleSet(RULES).match(_contact(50), NOW, lambda r: r.name == "24h", lambda r: r.name == "48h")

    assert rule is None


def test_equal_thresholds_keep_configured_order():
    rules = RuleSet([Rule("first", timedelta(hours=1)), Rule("second", timedelta(hours=1))])

    assert rules.match(_contact(2), NOW).name == "first"
    assert rules.match(_contact(2), NOW, lambda r: r.name == "first").name == "second"


def test_matching_lists_candidates_longest_first():
    names = [rule.name for rule in RuleSet(RULES).matching(_contact(30), NOW)]

    assert names == ["24h", "12h"]


def test_zero_threshold_matches_fresh_contact():
    rules = RuleSet([Rule("always", timedelta(0))])

    assert rules.match(_contact(0), NOW).name == "always"


def test_empty_rule_set_matches_nothing():
    assert RuleSet([]).match(_contact(1000), NOW) is None


def test_duplicate_rule_names_are_rejected():
    with pytest.raises(ConfigurationError):
        RuleSet([Rule("a", timedelta(hours=1)), Rule("a", timedelta(hours=2))])


def test_negative_threshold_is_rejected():
    with pytest.raises(ConfigurationError):
        RuleSet([Rule("a", timedelta(hours=-1))])
