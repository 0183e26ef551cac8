import pandas as pd
import pytest

from bikeshare_analysis.cleaner import TripCleaner
from bikeshare_analysis.errors import InvalidRecordError
from bikeshare_analysis.streaming import StreamingTripCleaner


@pytest.fixture
def trips(make_trips):
    df = make_trips([-5, 30, 600, 602, 10000, 640, 0, 580, 615, 4000, 590])
    # duplicates inside one chunk and across a chunk boundary
    return pd.concat([df, df.iloc[[2, 7]], df.iloc[[2]]], ignore_index=True)


def chunked(df, size):
    return lambda: (df.iloc[i : i + size] for i in range(0, len(df), size))


@pytest.mark.parametrize("size", [1, 4, 5, 100])
def test_two_pass_matches_in_memory_clean(trips, size):
    expected = TripCleaner().clean(trips)

    streamer = StreamingTripCleaner()
    actual = streamer.clean_all(chunked(trips, size))

    pd.testing.assert_frame_equal(actual.reset_index(drop=True), expected.reset_index(drop=True))
    assert streamer.stats == expected.attrs["stats"]
    assert streamer.bounds.upper == pytest.approx(expected.attrs["stats"]["upper_bound"])


def test_chunk_source_is_read_twice(trips):
    calls = []

    def source():
        calls.append(1)
        return iter([trips.iloc[:6], trips.iloc[6:]])

    list(StreamingTripCleaner().clean_chunks(source))

    assert len(calls) == 2


def test_one_output_chunk_per_input_chunk(trips):
    parts = list(StreamingTripCleaner().clean_chunks(chunked(trips, 4)))

    assert len(parts) == 4


def test_no_chunks_gives_empty_frame():
    out = StreamingTripCleaner().clean_all(lambda: iter([]))

    assert out.empty
    assert out.attrs["stats"]["initial_rows"] == 0


def test_all_non_positive_passes_through_empty(make_trips):
    df = make_trips([-1, 0, -30])

    streamer = StreamingTripCleaner()
    out = streamer.clean_all(chunked(df, 2))

    assert out.empty
    assert streamer.bounds is None
    assert streamer.stats["non_positive_rows"] == 3


def test_invalid_rows_fail_in_first_pass(make_trips):
    df = make_trips([300, 310, 320])
    df.loc[2, "started_at"] = pd.NaT

    with pytest.raises(InvalidRecordError):
        StreamingTripCleaner().compute_bounds(chunked(df, 2))
