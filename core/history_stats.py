"""
history_stats.py
-----------------
Historical Statistics Engine.

Per customer, scans the billed monthly totals in month order while keeping
a bounded trailing buffer of prior totals. Each month's baseline is taken
from the buffer before that month is appended, so a month never sits in its
own baseline.

    rolling_mean      mean of up to `trailing_months` prior billed totals
    rolling_std       sample standard deviation (ddof=1); None below 2 values
    months_available  number of prior totals in the buffer
    z_score           (current - mean) / std, only when months_available >=
                      min_months_for_stats and std is non-zero; else None

None means "insufficient history" (or zero spread) and is never conflated
with a true z-score of 0.
"""

from collections import deque
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from core.models import HistoryStats
from config.config_loader import get_history_stats_config


class HistoricalStatisticsEngine:
    """
    Usage:
        engine = HistoricalStatisticsEngine(min_months_for_stats=5)
        stats = engine.compute_customer("C1", monthly_totals_for_c1)
    """

    def __init__(self, trailing_months: int | None = None, min_months_for_stats: int | None = None):
        self.config = get_history_stats_config()
        self.trailing_months = trailing_months or self.config["trailing_months"]
        self.min_months = (
            min_months_for_stats if min_months_for_stats is not None else self.config["min_months_for_stats"]
        )
        self.zero_std_epsilon = self.config["zero_std_epsilon"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def compute_customer(
        self, customer_id: str, monthly_totals: Iterable[Tuple[date, float]]
    ) -> Dict[date, HistoryStats]:
        """
        Args:
            customer_id: Customer the totals belong to.
            monthly_totals: (bill_month, actual_total) pairs, one per billed
                month. Order does not matter; they are sorted here.

        Returns:
            HistoryStats keyed by bill_month, one per billed month.
        """
        buffer: deque = deque(maxlen=self.trailing_months)
        results: Dict[date, HistoryStats] = {}

        for bill_month, total in sorted(monthly_totals, key=lambda pair: pair[0]):
            results[bill_month] = self._stats_for(customer_id, bill_month, float(total), list(buffer))
            buffer.append(float(total))

        return results

    def compute(self, monthly_totals: pd.DataFrame) -> Dict[Tuple[str, date], HistoryStats]:
        """
        Runs compute_customer for every customer in a monthly totals frame
        (customer_id, bill_month, actual_total_charge).
        """
        results: Dict[Tuple[str, date], HistoryStats] = {}
        for customer_id, pairs in self.group_totals(monthly_totals).items():
            for bill_month, stats in self.compute_customer(customer_id, pairs).items():
                results[(customer_id, bill_month)] = stats
        return results

    @staticmethod
    def group_totals(monthly_totals: pd.DataFrame) -> Dict[str, List[Tuple[date, float]]]:
        """Splits a monthly totals frame into per-customer (month, total) lists."""
        grouped: Dict[str, List[Tuple[date, float]]] = {}
        for row in monthly_totals.itertuples(index=False):
            grouped.setdefault(str(row.customer_id), []).append(
                (pd.Timestamp(row.bill_month).date(), float(row.actual_total_charge))
            )
        return grouped

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _stats_for(
        self, customer_id: str, bill_month: date, current: float, prior: List[float]
    ) -> HistoryStats:
        n = len(prior)
        mean: Optional[float] = float(np.mean(prior)) if n else None
        std: Optional[float] = float(np.std(prior, ddof=1)) if n >= 2 else None

        z_score = None
        if n >= self.min_months and std is not None and std > self.zero_std_epsilon:
            z_score = (current - mean) / std

        return HistoryStats(
            customer_id=customer_id,
            bill_month=bill_month,
            current_total=current,
            months_available=n,
            rolling_mean=mean,
            rolling_std=std,
            z_score=z_score,
        )
