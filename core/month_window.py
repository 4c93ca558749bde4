"""
month_window.py
----------------
Window generator and customer-month grid builder.

Months are calendar months, always represented by their first day. The
window is bounded by an as-of month and a lookback length; the grid is the
full cross product of customers and window months, so every customer has
exactly one row per month whether or not any data exists for it.
"""

from datetime import date, datetime
from typing import List

import pandas as pd


def month_start(value) -> date:
    """Truncates a date-like value (date, datetime, Timestamp, "2024-06", "2024-06-17") to its month."""
    ts = pd.Timestamp(value)
    return date(ts.year, ts.month, 1)


def add_months(month: date, n: int) -> date:
    """Shifts a month-start date by n calendar months."""
    total = month.year * 12 + (month.month - 1) + n
    return date(total // 12, total % 12 + 1, 1)


def days_in_month(month: date) -> int:
    """Exclusive-end day count of a calendar month."""
    return (add_months(month, 1) - month_start(month)).days


def build_month_window(asof_month=None, lookback_months: int = 12) -> List[date]:
    """
    Produces the ordered months under analysis.

    Args:
        asof_month: Reference month. None = the current month.
        lookback_months: Number of months in the window, as-of month included.

    Returns:
        Ascending list of month-start dates, (asof - (N-1)) through asof.
    """
    if lookback_months < 1:
        raise ValueError(f"lookback_months must be >= 1, got {lookback_months}")

    anchor = month_start(asof_month if asof_month is not None else datetime.now())
    return [add_months(anchor, -offset) for offset in range(lookback_months - 1, -1, -1)]


def build_customer_month_grid(customers: pd.DataFrame, months: List[date]) -> pd.DataFrame:
    """
    Cross product of all distinct customers with all window months.

    Returns:
        DataFrame with columns customer_id, bill_month (datetime64, month start),
        sorted by customer then month.
    """
    customer_ids = pd.DataFrame({"customer_id": pd.unique(customers["customer_id"].astype(str))})
    month_frame = pd.DataFrame({"bill_month": pd.to_datetime(pd.Series(months, dtype="object"))})

    if customer_ids.empty or month_frame.empty:
        return pd.DataFrame({
            "customer_id": pd.Series(dtype="object"),
            "bill_month": pd.Series(dtype="datetime64[ns]"),
        })

    grid = customer_ids.merge(month_frame, how="cross")
    return grid.sort_values(["customer_id", "bill_month"]).reset_index(drop=True)
