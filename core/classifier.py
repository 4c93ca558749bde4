"""
classifier.py
--------------
First-match-wins anomaly classification.

Runs the ordered rule list against each ComparisonRecord. A record gets at
most one reason: the first rule whose predicate holds. Records that match
no rule keep anomaly_reason = None.
"""

from dataclasses import replace
from typing import List, Sequence

from core.models import ComparisonRecord
from rules.anomaly_rules import get_all_rules
from rules.base_rule import BaseAnomalyRule


class AnomalyClassifier:
    """
    Usage:
        classifier = AnomalyClassifier(pct_tolerance=0.12)
        labelled = classifier.classify_all(records)
    """

    def __init__(self, pct_tolerance: float | None = None, rules: Sequence[BaseAnomalyRule] | None = None):
        self.rules = list(rules) if rules is not None else get_all_rules(pct_tolerance)

    def classify(self, record: ComparisonRecord) -> ComparisonRecord:
        """Returns a copy of the record carrying the first matching reason."""
        for rule in self.rules:
            reason = rule.evaluate(record)
            if reason is not None:
                # A record can only carry one reason
                return replace(record, anomaly_reason=reason)
        return replace(record, anomaly_reason=None)

    def classify_all(self, records: List[ComparisonRecord]) -> List[ComparisonRecord]:
        return [self.classify(r) for r in records]
