#!/usr/bin/env python3
"""
Trend log – hourly summary of the stored readings.

One row per hour that received readings: mean / min / max weight, the
number of readings and how many of them were low stock.
"""

import pandas as pd

from telemetry_db import TelemetryDB

COLUMNS = ["weight_mean", "weight_min", "weight_max", "readings", "low_stock"]


def fetch_readings(db: TelemetryDB) -> pd.DataFrame:
    sql = """
        SELECT weight, presence, location, captured_at
        FROM reading
        ORDER BY reading_id;
    """
    df = pd.read_sql_query(sql, db.conn)
    df["captured_at"] = pd.to_datetime(df["captured_at"], format="ISO8601")
    return df


def hourly_summary(db: TelemetryDB, low_stock_threshold: float = 350.0) -> pd.DataFrame:
    df = fetch_readings(db)
    if df.empty:
        return pd.DataFrame(columns=COLUMNS)

    df["low_stock"] = (df["weight"] < low_stock_threshold) & (df["presence"] != "present")
    hourly = (
        df.set_index("captured_at")
        .resample("1h")
        .agg({"weight": ["mean", "min", "max", "count"], "low_stock": "sum"})
    )
    hourly.columns = COLUMNS
    hourly = hourly[hourly["readings"] > 0].copy()
    hourly["low_stock"] = hourly["low_stock"].astype(int)
    return hourly


def format_report(summary: pd.DataFrame) -> str:
    if summary.empty:
        return "No readings stored yet."
    return summary.to_string(float_format=lambda v: f"{v:.2f}")
