"""
sources.py
-----------
Container and loader for the seven read-only source datasets.

The engine never owns these records; it reads them once per run from CSV
files (or receives them as DataFrames from a caller) and treats them as an
immutable snapshot.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, List

import pandas as pd

logger = logging.getLogger(__name__)


REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "customers": ["customer_id"],
    "plan_history": ["customer_id", "plan_id", "effective_from", "effective_to"],
    "plans": ["plan_id", "monthly_rate", "included_units", "overage_rate"],
    "usage": ["customer_id", "usage_date", "units"],
    "discounts": ["customer_id", "bill_month", "amount"],
    "taxes_fees": ["customer_id", "bill_month", "amount"],
    "billing_lines": ["customer_id", "bill_month", "line_type", "amount", "bill_id"],
}


@dataclass(frozen=True)
class SourceTables:
    """Snapshot of every external dataset the engine reads."""

    customers: pd.DataFrame
    plan_history: pd.DataFrame
    plans: pd.DataFrame
    usage: pd.DataFrame
    discounts: pd.DataFrame
    taxes_fees: pd.DataFrame
    billing_lines: pd.DataFrame

    @classmethod
    def from_frames(cls, **frames: pd.DataFrame) -> "SourceTables":
        """
        Builds a snapshot from keyword DataFrames. Datasets not supplied
        default to empty frames with the required columns.
        """
        unknown = set(frames) - set(REQUIRED_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown source datasets: {sorted(unknown)}")

        resolved = {}
        for name, columns in REQUIRED_COLUMNS.items():
            frame = frames.get(name)
            resolved[name] = frame if frame is not None else pd.DataFrame(columns=columns)
        return cls(**resolved)

    def check_required_columns(self) -> None:
        """Raises ValueError naming every dataset that misses a required column."""
        problems = []
        for f in fields(self):
            frame = getattr(self, f.name)
            missing = [c for c in REQUIRED_COLUMNS[f.name] if c not in frame.columns]
            if missing:
                problems.append(f"{f.name}: {missing}")
        if problems:
            raise ValueError(f"Missing required columns: {'; '.join(problems)}")

    def row_counts(self) -> Dict[str, int]:
        return {f.name: len(getattr(self, f.name)) for f in fields(self)}


def load_sources(data_dir: str) -> SourceTables:
    """
    Reads <dataset>.csv for every dataset from data_dir.

    Raises:
        FileNotFoundError: If any dataset file is missing.
    """
    frames = {}
    for name in REQUIRED_COLUMNS:
        path = os.path.join(data_dir, f"{name}.csv")
        if not os.path.exists(path):
            raise FileNotFoundError(f"Source dataset not found: {path}")
        frames[name] = pd.read_csv(path, dtype={"customer_id": str, "plan_id": str, "bill_id": str})
        logger.info(f"Loaded {len(frames[name]):,} rows from {path}")

    return SourceTables(**frames)
