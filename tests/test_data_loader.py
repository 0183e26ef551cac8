import os

import pandas as pd
import pytest

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.data_loader import DataLoader
from bikeshare_analysis.errors import InvalidRecordError


def divvy_export(make_trips, durations, **kwargs):
    """A trip frame shaped like a Divvy monthly CSV export."""
    df = make_trips(durations, **kwargs)
    df["rideable_type"] = df["rideable_type"].replace({"classic": "classic_bike"})
    df = df.rename(columns={"rider_type": "member_casual"})
    df["start_lat"] = 41.88
    df["start_lng"] = -87.63
    return df


@pytest.fixture
def export_csv(tmp_path, make_trips):
    df = divvy_export(
        make_trips,
        [300, 420, 610, 380, 900, 540],
        rider_types=["member", "casual", "member", "casual", "member", "member"],
        rideable_types=["classic", "electric_bike", "classic", "electric_scooter", "classic", "classic"],
    )
    df.loc[2, "start_station_name"] = None
    df.loc[4, "rideable_type"] = "docked_bike"
    df.loc[5, "member_casual"] = "subscriber"
    path = tmp_path / "202406-divvy-tripdata.csv"
    df.to_csv(path, index=False)
    return path


def test_load_maps_export_onto_contract(export_csv, tmp_path):
    loader = DataLoader(str(export_csv), artifact_dir=str(tmp_path / "artifacts"))

    df = loader.load_data()

    assert list(df.columns) == dc.TRIP_COLUMNS
    assert set(df["rideable_type"]) <= set(dc.RIDEABLE_TYPES)
    assert "docked_bike" not in set(df["rideable_type"])
    assert pd.api.types.is_datetime64_any_dtype(df["started_at"])
    assert df["ride_id"].tolist() == ["R00000", "R00001", "R00003", "R00004"]


def test_load_counts_and_samples_dropped_rows(export_csv, tmp_path):
    loader = DataLoader(str(export_csv), artifact_dir=str(tmp_path / "artifacts"))

    df = loader.load_data()
    stats = df.attrs["stats"]

    assert stats["initial_rows"] == 6
    assert stats["loaded_rows"] == 4
    assert stats["violation_missing_field"] == 1
    assert stats["violation_rider_type"] == 1
    sample = df.attrs["dropped_sample_path"]
    assert sample and os.path.exists(sample)
    assert len(pd.read_csv(sample)) == 2


def test_directory_and_glob_inputs(tmp_path, make_trips):
    for month, start in (("202405", "2024-05-01"), ("202406", "2024-06-01")):
        divvy_export(make_trips, [300, 320], start=pd.Timestamp(start)).to_csv(
            tmp_path / f"{month}-divvy-tripdata.csv", index=False
        )
    (tmp_path / "notes.txt").write_text("not a trip file")

    by_dir = DataLoader(str(tmp_path), artifact_dir=str(tmp_path)).load_data()
    by_glob = DataLoader(str(tmp_path / "*-divvy-tripdata.csv"), artifact_dir=str(tmp_path)).load_data()

    assert len(by_dir) == len(by_glob) == 4
    assert by_dir["started_at"].iloc[0] == pd.Timestamp("2024-05-01")


def test_chunks_match_whole_load(export_csv, tmp_path):
    loader = DataLoader(str(export_csv), artifact_dir=str(tmp_path))

    whole = loader.load_data()
    chunked = pd.concat(list(loader.iter_chunks(chunksize=2)))

    pd.testing.assert_frame_equal(chunked.reset_index(drop=True), whole.reset_index(drop=True))
    assert loader.stats["loaded_rows"] == len(whole)


def test_parquet_export(tmp_path, make_trips):
    path = tmp_path / "202406-divvy-tripdata.parquet"
    divvy_export(make_trips, [300, 320, 340]).to_parquet(path, index=False)

    loader = DataLoader(str(path), artifact_dir=str(tmp_path))

    assert len(loader.load_data()) == 3
    assert sum(len(c) for c in loader.iter_chunks(chunksize=2)) == 3


def test_missing_column_fails_fast(tmp_path, make_trips):
    path = tmp_path / "202406-divvy-tripdata.csv"
    divvy_export(make_trips, [300]).drop(columns=["member_casual"]).to_csv(path, index=False)

    with pytest.raises(InvalidRecordError, match="member_casual"):
        DataLoader(str(path), artifact_dir=str(tmp_path)).load_data()


def test_no_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        DataLoader(str(tmp_path / "*.csv")).load_data()


def test_nothing_usable(tmp_path, make_trips):
    path = tmp_path / "202406-divvy-tripdata.csv"
    divvy_export(make_trips, [300], rider_types=["subscriber"]).to_csv(path, index=False)

    with pytest.raises(ValueError, match="no usable trip rows"):
        DataLoader(str(path), artifact_dir=str(tmp_path)).load_data()


def test_mixed_precision_timestamps_are_kept(tmp_path, make_trips):
    df = divvy_export(make_trips, [300, 320, 340, 360])
    for col in dc.TIMESTAMP_COLUMNS:
        df[col] = df[col].dt.strftime("%Y-%m-%d %H:%M:%S")
    df.loc[1, "started_at"] = "2024-06-03 09:00:00.289"
    df.loc[1, "ended_at"] = "2024-06-03 09:05:20.512"
    path = tmp_path / "202406-divvy-tripdata.csv"
    df.to_csv(path, index=False)

    loaded = DataLoader(str(path), artifact_dir=str(tmp_path)).load_data()

    assert len(loaded) == 4
    assert loaded.attrs["stats"]["violation_timestamp"] == 0
    assert loaded.loc[1, "started_at"] == pd.Timestamp("2024-06-03 09:00:00.289")
