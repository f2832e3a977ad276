from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Sequence

from .core.errors import ConfigurationError
from .core.models import Contact, Rule

FulfilledCheck = Callable[[Rule], bool]


class RuleSet:
    """Ordered inactivity rules and the escalation matcher."""

    def __init__(self, rules: Sequence[Rule]) -> None:
        seen = set()
        for rule in rules:
            if rule.name in seen:
                raise ConfigurationError(f"Duplicate reminder rule name: {rule.name}")
            if rule.threshold < timedelta(0):
                raise ConfigurationError(f"Reminder rule '{rule.name}' has a negative threshold")
            seen.add(rule.name)
        self._rules: List[Rule] = list(rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def matching(self, contact: Contact, now: datetime) -> List[Rule]:
        """Rules whose threshold the contact has reached, longest threshold first."""
        inactive_for = contact.inactive_for(now)
        candidates = [rule for rule in self._rules if inactive_for >= rule.threshold]
        # sorted() is stable, so equal thresholds keep their configured order
        return sorted(candidates, key=lambda rule: rule.threshold, reverse=True)

    def match(
        self,
        contact: Contact,
        now: datetime,
        is_fulfilled: Optional[FulfilledCheck] = None,
        has_failed: Optional[FulfilledCheck] = None,
    ) -> Optional[Rule]:
        """
        Pick the rule to fire for ``contact`` at ``now``.

        Among the matching rules this is the one with the largest threshold that
        has not been fulfilled in the current inactivity window. Once a rule has
        fired, every matching rule with a strictly shorter threshold is consumed
        for the rest of the window. A rule that failed permanently in this
        window is passed over without consuming the rules below it.
        """
        consumed_above: Optional[timedelta] = None
        for rule in self.matching(contact, now):
            if has_failed is not None and has_failed(rule):
                continue
            if is_fulfilled is not None and is_fulfilled(rule):
                if consumed_above is None:
                    consumed_above = rule.threshold
                continue
            if consumed_above is not None and rule.threshold < consumed_above:
                return None
            return rule
        return None
