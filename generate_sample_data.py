"""
Billing Anomaly Engine - Sample Data Generator

Generates a reproducible telecom billing snapshot with injected anomalies
for running the reconciliation pipeline end to end.

Data sources generated (under data/):
  - customers.csv:     Customer master list
  - plans.csv:         Rate card (monthly rate, included units, overage rate)
  - plan_history.csv:  Plan assignments per customer with effective dates
  - usage.csv:         Daily usage records
  - discounts.csv:     Monthly discount amounts (negative)
  - taxes_fees.csv:    Monthly taxes and regulatory fees
  - billing_lines.csv: What was actually billed, one row per line item

Usage:
    python generate_sample_data.py
    python main.py --data-dir data --asof-month 2024-12
"""

import os
import random

import numpy as np
import pandas as pd

# Reproducibility
SEED = 42
random.seed(SEED)
np.random.seed(SEED)

# Configuration
DATA_DIR = "data"
NUM_CUSTOMERS = 60
FIRST_MONTH = pd.Timestamp("2023-07-01")
LAST_MONTH = pd.Timestamp("2024-12-01")
TAX_RATE = 0.08

PLANS = [
    {"plan_id": "P-BASIC", "monthly_rate": 25.0, "included_units": 500, "overage_rate": 0.05},
    {"plan_id": "P-PLUS", "monthly_rate": 45.0, "included_units": 2000, "overage_rate": 0.03},
    {"plan_id": "P-PRO", "monthly_rate": 70.0, "included_units": 5000, "overage_rate": 0.02},
    {"plan_id": "P-UNLTD", "monthly_rate": 95.0, "included_units": 100000, "overage_rate": 0.0},
]
PLAN_BY_ID = {p["plan_id"]: p for p in PLANS}

# Anomalies injected into the last few months, one customer each
ANOMALY_COUNTS = {
    "missing_bill": 3,
    "duplicate_bill": 3,
    "proration_error": 3,
    "usage_overcharge": 3,
    "allowance_mismatch": 3,
    "tax_error": 3,
    "billing_spike": 3,
}

_bill_counter = 0


def next_bill_id():
    global _bill_counter
    _bill_counter += 1
    return f"BILL-{_bill_counter:06d}"


def month_range():
    return list(pd.date_range(FIRST_MONTH, LAST_MONTH, freq="MS"))


def generate_customers():
    return pd.DataFrame({"customer_id": [f"C{i:04d}" for i in range(1, NUM_CUSTOMERS + 1)]})


def generate_plan_history(customers):
    """
    Every customer starts on a plan at the beginning of the history. About
    a fifth change plan mid-month once; the last interval stays open-ended.
    """
    rows = []
    plan_ids = [p["plan_id"] for p in PLANS]
    for customer_id in customers["customer_id"]:
        start_plan = random.choice(plan_ids)
        if random.random() < 0.2:
            change_month = random.choice(month_range()[3:-3])
            change_date = change_month + pd.Timedelta(days=random.randint(5, 25))
            new_plan = random.choice([p for p in plan_ids if p != start_plan])
            rows.append({"customer_id": customer_id, "plan_id": start_plan,
                         "effective_from": FIRST_MONTH.date(), "effective_to": change_date.date()})
            rows.append({"customer_id": customer_id, "plan_id": new_plan,
                         "effective_from": change_date.date(), "effective_to": None})
        else:
            # Mix of null and far-future sentinels for open-ended rows
            open_end = None if random.random() < 0.5 else "2999-12-31"
            rows.append({"customer_id": customer_id, "plan_id": start_plan,
                         "effective_from": FIRST_MONTH.date(), "effective_to": open_end})
    return pd.DataFrame(rows)


def generate_usage(customers, plan_history):
    """Daily usage sized around each customer's included allowance."""
    rows = []
    for customer_id in customers["customer_id"]:
        plan_id = plan_history.loc[plan_history["customer_id"] == customer_id, "plan_id"].iloc[0]
        allowance = min(PLAN_BY_ID[plan_id]["included_units"], 6000)
        daily_mean = allowance * np.random.uniform(0.6, 1.15) / 30
        for day in pd.date_range(FIRST_MONTH, LAST_MONTH + pd.offsets.MonthEnd(0), freq="D"):
            units = max(0.0, np.random.normal(daily_mean, daily_mean * 0.3))
            rows.append({"customer_id": customer_id, "usage_date": day.date(), "units": round(units, 1)})
    return pd.DataFrame(rows)


def generate_discounts(customers):
    """A third of customers get a standing loyalty discount."""
    rows = []
    for customer_id in customers["customer_id"].sample(frac=0.33, random_state=SEED):
        amount = -round(random.choice([5.0, 7.5, 10.0]), 2)
        for month in month_range():
            rows.append({"customer_id": customer_id, "bill_month": month.date(), "amount": amount})
    return pd.DataFrame(rows, columns=["customer_id", "bill_month", "amount"])


def expected_month(customer_id, month, plan_history, usage, discounts):
    """Expected charges for one customer-month, following the billing rules."""
    next_month = month + pd.DateOffset(months=1)
    days = (next_month - month).days
    base = 0.0
    rating_plan = None
    for row in plan_history[plan_history["customer_id"] == customer_id].itertuples():
        start = pd.Timestamp(row.effective_from)
        end = next_month if row.effective_to in (None, "2999-12-31") or pd.isna(row.effective_to) \
            else pd.Timestamp(row.effective_to)
        active_from, active_to = max(start, month), min(end, next_month)
        if active_to <= active_from:
            continue
        base += PLAN_BY_ID[row.plan_id]["monthly_rate"] * (active_to - active_from).days / days
        rating_plan = PLAN_BY_ID[row.plan_id]

    units = usage.loc[(usage["customer_id"] == customer_id) & (usage["bill_month"] == month), "units"].sum()
    overage = max(units - rating_plan["included_units"], 0) * rating_plan["overage_rate"]
    discount = discounts.loc[
        (discounts["customer_id"] == customer_id) & (discounts["bill_month"] == month), "amount"
    ].sum()
    return {"base": round(base, 2), "usage": round(overage, 2), "discount": round(float(discount), 2)}


def generate_billing(customers, plan_history, usage, discounts):
    """
    Bills every customer-month as expected, then injects anomalies into the
    last three months of a handful of customers.
    """
    usage = usage.copy()
    usage["bill_month"] = pd.to_datetime(usage["usage_date"]).dt.to_period("M").dt.to_timestamp()
    discounts = discounts.copy()
    discounts["bill_month"] = pd.to_datetime(discounts["bill_month"])

    customer_ids = list(customers["customer_id"])
    shuffled = random.sample(customer_ids, len(customer_ids))
    injected = {}
    cursor = 0
    for anomaly, count in ANOMALY_COUNTS.items():
        for customer_id in shuffled[cursor:cursor + count]:
            injected[customer_id] = (anomaly, random.choice(month_range()[-3:]))
        cursor += count

    tax_rows, line_rows = [], []
    for customer_id in customer_ids:
        for month in month_range():
            charges = expected_month(customer_id, month, plan_history, usage, discounts)
            subtotal = charges["base"] + charges["usage"] + charges["discount"]
            tax = round(max(subtotal, 0) * TAX_RATE, 2)
            tax_rows.append({"customer_id": customer_id, "bill_month": month.date(), "amount": tax})

            anomaly, anomaly_month = injected.get(customer_id, (None, None))
            if anomaly_month != month:
                anomaly = None

            if anomaly == "missing_bill":
                continue
            if anomaly == "proration_error":
                charges["base"] = round(charges["base"] * 1.5 + 10, 2)
            elif anomaly == "usage_overcharge":
                charges["usage"] = round(charges["usage"] + 40.0, 2)
            elif anomaly == "allowance_mismatch" and charges["usage"] == 0:
                charges["usage"] = 18.5
            elif anomaly == "tax_error":
                tax = round(tax + 15.0, 2)
            elif anomaly == "billing_spike":
                charges["base"] = round(charges["base"] * 3, 2)

            bill_ids = [next_bill_id()]
            if anomaly == "duplicate_bill":
                bill_ids.append(next_bill_id())

            for bill_id in bill_ids:
                for line_type, amount in [("base", charges["base"]), ("usage", charges["usage"]),
                                          ("discount", charges["discount"]), ("tax", tax)]:
                    if amount == 0 and line_type != "base":
                        continue
                    line_rows.append({"customer_id": customer_id, "bill_month": month.date(),
                                      "line_type": line_type, "amount": amount, "bill_id": bill_id})

    return pd.DataFrame(tax_rows), pd.DataFrame(line_rows), injected


def main():
    os.makedirs(DATA_DIR, exist_ok=True)

    customers = generate_customers()
    plans = pd.DataFrame(PLANS)
    plan_history = generate_plan_history(customers)
    usage = generate_usage(customers, plan_history)
    discounts = generate_discounts(customers)
    taxes_fees, billing_lines, injected = generate_billing(customers, plan_history, usage, discounts)

    datasets = {
        "customers": customers,
        "plans": plans,
        "plan_history": plan_history,
        "usage": usage,
        "discounts": discounts,
        "taxes_fees": taxes_fees,
        "billing_lines": billing_lines,
    }
    for name, df in datasets.items():
        path = os.path.join(DATA_DIR, f"{name}.csv")
        df.to_csv(path, index=False)
        print(f"  {name:15s} {len(df):>8,} rows -> {path}")

    print(f"\n  Injected anomalies ({len(injected)} customer-months):")
    for customer_id, (anomaly, month) in sorted(injected.items()):
        print(f"    {customer_id}  {month:%Y-%m}  {anomaly}")


if __name__ == "__main__":
    main()
