import logging
from typing import Iterable, List, NamedTuple, Optional

import pandas as pd

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.errors import InsufficientDataError, InvalidRecordError
from bikeshare_analysis.records import CleanedRecord, TripRecord

logger = logging.getLogger(__name__)


class DurationBounds(NamedTuple):
    """Tukey fences over ride durations, inclusive on both ends."""

    q1: float
    q3: float
    iqr: float
    lower: float
    upper: float

    def contains(self, durations: pd.Series) -> pd.Series:
        return (durations >= self.lower) & (durations <= self.upper)


def compute_iqr_bounds(durations, multiplier: float = dc.IQR_MULTIPLIER) -> DurationBounds:
    """Q1/Q3 with linear interpolation at position (n - 1) * p."""
    if multiplier < 0:
        raise ValueError(f"IQR multiplier must be non-negative, got {multiplier}")

    series = pd.Series(durations, dtype="float64")
    if series.empty:
        raise InsufficientDataError("Cannot compute quartiles of an empty duration population.")

    q1 = float(series.quantile(0.25, interpolation=dc.QUANTILE_INTERPOLATION))
    q3 = float(series.quantile(0.75, interpolation=dc.QUANTILE_INTERPOLATION))
    iqr = q3 - q1
    return DurationBounds(
        q1=q1,
        q3=q3,
        iqr=iqr,
        lower=q1 - multiplier * iqr,
        upper=q3 + multiplier * iqr,
    )


def check_trip_frame(df: pd.DataFrame) -> None:
    """Fail fast on frames the RecordSource should never have produced."""
    missing_cols = [c for c in dc.TRIP_COLUMNS if c not in df.columns]
    if missing_cols:
        raise InvalidRecordError(f"Schema Violation: Missing columns {missing_cols}")

    for col, domain in dc.CATEGORICAL_DOMAINS.items():
        bad = df.loc[~df[col].isin(domain), col]
        if not bad.empty:
            raise InvalidRecordError(
                f"Value Violation: {col} has values outside {domain}: "
                f"{sorted(map(str, bad.unique()))[:5]}"
            )


def derive_fields(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of df with duration_secs and day_of_week added."""
    out = df.copy()

    started = pd.to_datetime(out["started_at"], format=dc.TIMESTAMP_FORMAT, errors="coerce")
    ended = pd.to_datetime(out["ended_at"], format=dc.TIMESTAMP_FORMAT, errors="coerce")
    bad_ts = started.isna() | ended.isna()
    if bad_ts.any():
        raise InvalidRecordError(
            f"Timestamp Violation: {int(bad_ts.sum())} rows with missing or unparseable timestamps, "
            "so no finite duration "
            f"(first ride_id: {out.loc[bad_ts, 'ride_id'].iloc[0]})"
        )

    duration = (ended - started).dt.total_seconds().astype("float64")

    out["started_at"] = started
    out["ended_at"] = ended
    out[dc.DURATION_COLUMN] = duration
    out[dc.DAY_OF_WEEK_COLUMN] = started.dt.day_name()
    return out


def empty_cleaned(df: pd.DataFrame) -> pd.DataFrame:
    columns = list(df.columns) + [c for c in dc.TRIP_COLUMNS + dc.DERIVED_COLUMNS if c not in df.columns]
    out = df.reindex(columns=columns).iloc[0:0].copy()
    out[dc.DURATION_COLUMN] = out[dc.DURATION_COLUMN].astype("float64")
    return out


class TripCleaner:
    """
    Pure cleaning pass over a trip frame:
    - Drops exact duplicates across every TripRecord column (first kept)
    - Derives duration_secs and day_of_week
    - Drops non-positive durations
    - Drops IQR outliers, bounds computed once over the whole population
    Row counts per stage are attached on df.attrs["stats"].
    """

    def __init__(self, iqr_multiplier: float = dc.IQR_MULTIPLIER):
        if iqr_multiplier < 0:
            raise ValueError(f"IQR multiplier must be non-negative, got {iqr_multiplier}")
        self.iqr_multiplier = iqr_multiplier

    def clean(self, df: pd.DataFrame) -> pd.DataFrame:
        initial_rows = len(df)
        if initial_rows == 0:
            logger.info("Empty input; nothing to clean.")
            out = empty_cleaned(df)
            out.attrs["stats"] = build_stats(0, 0, 0, 0, None)
            return out

        check_trip_frame(df)

        # 1) Deduplicate on raw attributes
        deduped = df.drop_duplicates(subset=dc.TRIP_COLUMNS, keep="first")
        duplicate_rows = initial_rows - len(deduped)

        # 2) Derived fields
        derived = derive_fields(deduped)

        # 3) Non-positive durations
        positive = derived[derived[dc.DURATION_COLUMN] > 0]
        non_positive_rows = len(derived) - len(positive)

        # 4) IQR outliers
        if positive.empty:
            bounds = None
            cleaned = positive.copy()
        else:
            bounds = compute_iqr_bounds(positive[dc.DURATION_COLUMN], self.iqr_multiplier)
            cleaned = positive[bounds.contains(positive[dc.DURATION_COLUMN])].copy()
        outlier_rows = len(positive) - len(cleaned)

        stats = build_stats(initial_rows, duplicate_rows, non_positive_rows, outlier_rows, bounds)
        logger.info(f"Cleaned trip stats: {stats}")

        cleaned.attrs["stats"] = stats
        return cleaned


def build_stats(
    initial_rows: int,
    duplicate_rows: int,
    non_positive_rows: int,
    outlier_rows: int,
    bounds: Optional[DurationBounds],
) -> dict:
    dropped_rows = duplicate_rows + non_positive_rows + outlier_rows
    nan = float("nan")
    return {
        "initial_rows": initial_rows,
        "duplicate_rows": duplicate_rows,
        "non_positive_rows": non_positive_rows,
        "outlier_rows": outlier_rows,
        "clean_rows": initial_rows - dropped_rows,
        "dropped_rows": dropped_rows,
        "cleaning_ratio": (dropped_rows / initial_rows) if initial_rows > 0 else 0.0,
        "q1": bounds.q1 if bounds else nan,
        "q3": bounds.q3 if bounds else nan,
        "iqr": bounds.iqr if bounds else nan,
        "lower_bound": bounds.lower if bounds else nan,
        "upper_bound": bounds.upper if bounds else nan,
    }


def records_to_frame(records: Iterable[TripRecord]) -> pd.DataFrame:
    return pd.DataFrame([r.model_dump() for r in records], columns=dc.TRIP_COLUMNS)


def clean_records(
    records: Iterable[TripRecord], iqr_multiplier: float = dc.IQR_MULTIPLIER
) -> List[CleanedRecord]:
    """Record-level entry point: TripRecords in, CleanedRecords out, input order kept."""
    cleaned = TripCleaner(iqr_multiplier).clean(records_to_frame(records))
    return [CleanedRecord(**row) for row in cleaned[dc.TRIP_COLUMNS + dc.DERIVED_COLUMNS].to_dict("records")]
