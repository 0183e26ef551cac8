import logging
from typing import Callable, Dict, Hashable, Optional, Sequence, Union

import pandas as pd

import bikeshare_analysis.data_contract as dc

logger = logging.getLogger(__name__)

KeySpec = Union[str, Sequence[str], Callable[[pd.DataFrame], pd.Series]]

SUMMARY_COLUMNS = ["count", "mean", "min", "max"]


def group_summary(
    df: pd.DataFrame,
    by: KeySpec,
    value_field: str = dc.DURATION_COLUMN,
    sort: bool = False,
    levels: Optional[Sequence[Hashable]] = None,
) -> pd.DataFrame:
    """
    count / mean / min / max of value_field per distinct key.

    by is a column name, a list of column names, or a key function
    returning one key per row. Keys come out in discovery order unless
    sort=True. Groups are only those seen in the data; pass levels to
    force zero-count rows for keys that are absent.
    """
    if callable(by):
        keys = pd.Series(by(df), index=df.index)
        keys.name = keys.name or "key"
        grouped = df[value_field].astype("float64").groupby(keys, sort=sort, dropna=False)
    else:
        cols = [by] if isinstance(by, str) else list(by)
        grouped = df.groupby(cols, sort=sort, dropna=False, observed=True)[value_field]

    agg = grouped.agg(["count", "sum", "min", "max"])

    # sum / count rather than a running mean keeps the result order-stable
    summary = pd.DataFrame(
        {
            "count": agg["count"].astype("int64"),
            "mean": agg["sum"] / agg["count"],
            "min": agg["min"].astype("float64"),
            "max": agg["max"].astype("float64"),
        },
        index=agg.index,
    )

    if levels is not None:
        summary = _with_levels(summary, levels)

    return summary


def _with_levels(summary: pd.DataFrame, levels: Sequence[Hashable]) -> pd.DataFrame:
    requested = list(levels)
    requested_set = set(requested)
    keys = requested + [k for k in summary.index if k not in requested_set]

    if isinstance(summary.index, pd.MultiIndex):
        index = pd.MultiIndex.from_tuples(keys, names=summary.index.names)
    else:
        index = pd.Index(keys, name=summary.index.name)

    out = summary.reindex(index)
    out["count"] = out["count"].fillna(0).astype("int64")
    return out


def preference_share(
    df: pd.DataFrame,
    category: str = "rideable_type",
    population: str = "rider_type",
) -> pd.DataFrame:
    """Ride counts per (population, category) and each category's share within its population."""
    rides = df.groupby([population, category], sort=False, observed=True).size().rename("rides")
    share = rides / rides.groupby(level=0, sort=False).transform("sum")
    return pd.DataFrame({"rides": rides.astype("int64"), "share": share})


def standard_views(df: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """The duration summaries reported for every run."""
    by_day = group_summary(df, dc.DAY_OF_WEEK_COLUMN)
    by_day = by_day.reindex([d for d in dc.WEEKDAYS if d in by_day.index])

    views = {
        "by_day_of_week": by_day,
        "by_rider_type": group_summary(df, "rider_type"),
        "by_rideable_type": group_summary(df, "rideable_type"),
        "by_rider_and_rideable": group_summary(df, ["rider_type", "rideable_type"]),
        "rideable_preference": preference_share(df),
    }
    logger.info(f"Built {len(views)} summary views over {len(df)} rides")
    return views
