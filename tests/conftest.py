import pandas as pd
import pytest

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.cleaner import TripCleaner

# 2024-06-03 is a Monday
BASE_TIME = pd.Timestamp("2024-06-03 08:00:00")


def build_trips(durations, rider_types=None, rideable_types=None, start=BASE_TIME):
    """Raw trip frame, one row per duration (seconds), each ride starting an hour after the last."""
    n = len(durations)
    rider_types = rider_types or ["member"] * n
    rideable_types = rideable_types or ["classic"] * n

    rows = []
    for i, secs in enumerate(durations):
        started = start + pd.Timedelta(hours=i)
        rows.append(
            {
                "ride_id": f"R{i:05d}",
                "rideable_type": rideable_types[i],
                "started_at": started,
                "ended_at": started + pd.Timedelta(seconds=secs),
                "start_station_id": f"TA{i % 3}",
                "start_station_name": f"Station {i % 3}",
                "end_station_id": f"TB{i % 4}",
                "end_station_name": f"Dock {i % 4}",
                "rider_type": rider_types[i],
            }
        )
    return pd.DataFrame(rows, columns=dc.TRIP_COLUMNS)


def build_frame(groups, factor="rider_type", response=dc.DURATION_COLUMN):
    """Analysis-ready frame from {level: [values]} (or {(a, b): [values]} with factor a pair)."""
    rows = []
    for key, values in groups.items():
        keys = key if isinstance(key, tuple) else (key,)
        cols = factor if isinstance(factor, tuple) else (factor,)
        for v in values:
            rows.append({**dict(zip(cols, keys)), response: float(v)})
    return pd.DataFrame(rows)


@pytest.fixture
def make_trips():
    return build_trips


@pytest.fixture
def make_frame():
    return build_frame


@pytest.fixture
def raw_trips():
    """Durations [-5, 30, 600, 602, 10000] with the 600s ride exported twice."""
    df = build_trips([-5, 30, 600, 602, 10000])
    return pd.concat([df, df.iloc[[2]]], ignore_index=True)


@pytest.fixture
def cleaner():
    return TripCleaner()


@pytest.fixture
def rider_groups(make_frame):
    return make_frame({"member": [100, 200, 300], "casual": [400, 500, 600]})


@pytest.fixture(autouse=True)
def _allow_mlflow_file_store(monkeypatch):
    """Newer MLflow rejects file:// tracking URIs unless explicitly opted in."""
    monkeypatch.setenv("MLFLOW_ALLOW_FILE_STORE", "true")
