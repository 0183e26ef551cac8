"""
bikeshare_analysis/streaming.py

Two-pass variant of TripCleaner for trip exports that do not fit in memory.

Deduplication needs a full-key index and the IQR bounds need quartiles
over the whole population, so neither can be decided from a single
chunk:
- Pass 1 walks every chunk, indexes row hashes and collects the
  positive durations of first occurrences, then fixes the bounds.
- Pass 2 walks the chunks again and filters them against the index
  rebuilt in the same order and the fixed bounds.

Row identity is a 64-bit hash over all TripRecord columns
(pandas.util.hash_pandas_object). Only the hashes and one float per
surviving ride are kept between passes.
"""
import logging
from typing import Callable, Iterable, Iterator, List, Optional

import numpy as np
import pandas as pd

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.cleaner import (
    DurationBounds,
    build_stats,
    check_trip_frame,
    compute_iqr_bounds,
    derive_fields,
    empty_cleaned,
)

logger = logging.getLogger(__name__)

ChunkSource = Callable[[], Iterable[pd.DataFrame]]


def _first_occurrences(chunk: pd.DataFrame, seen: set) -> np.ndarray:
    hashes = pd.util.hash_pandas_object(chunk[dc.TRIP_COLUMNS], index=False).to_numpy()
    keep = np.zeros(len(hashes), dtype=bool)
    for i, h in enumerate(hashes):
        if h not in seen:
            seen.add(h)
            keep[i] = True
    return keep


class StreamingTripCleaner:
    """
    chunk_source is called once per pass and must return a fresh
    iterable yielding the same chunks in the same order each time
    (e.g. a DataLoader.iter_chunks bound method wrapped in a lambda).
    """

    def __init__(self, iqr_multiplier: float = dc.IQR_MULTIPLIER):
        if iqr_multiplier < 0:
            raise ValueError(f"IQR multiplier must be non-negative, got {iqr_multiplier}")
        self.iqr_multiplier = iqr_multiplier
        self.bounds: Optional[DurationBounds] = None
        self.stats: Optional[dict] = None

    def compute_bounds(self, chunk_source: ChunkSource) -> Optional[DurationBounds]:
        """Pass 1. Returns None when no ride has a positive duration."""
        seen: set = set()
        durations: List[np.ndarray] = []
        rows = 0

        for chunk in chunk_source():
            rows += len(chunk)
            if chunk.empty:
                continue
            check_trip_frame(chunk)
            first = chunk[_first_occurrences(chunk, seen)]
            duration = derive_fields(first)[dc.DURATION_COLUMN].to_numpy()
            durations.append(duration[duration > 0])

        population = np.concatenate(durations) if durations else np.empty(0)
        logger.info(
            f"Pass 1: {rows} rows, {len(seen)} distinct, {len(population)} with positive duration"
        )

        self.bounds = compute_iqr_bounds(population, self.iqr_multiplier) if len(population) else None
        return self.bounds

    def clean_chunks(self, chunk_source: ChunkSource) -> Iterator[pd.DataFrame]:
        """Yield one cleaned frame per input chunk (possibly empty)."""
        bounds = self.compute_bounds(chunk_source)

        seen: set = set()
        initial_rows = duplicate_rows = non_positive_rows = outlier_rows = 0

        for chunk in chunk_source():
            initial_rows += len(chunk)
            if chunk.empty:
                yield empty_cleaned(chunk)
                continue

            first = chunk[_first_occurrences(chunk, seen)]
            duplicate_rows += len(chunk) - len(first)

            derived = derive_fields(first)
            positive = derived[derived[dc.DURATION_COLUMN] > 0]
            non_positive_rows += len(derived) - len(positive)

            if bounds is None:
                cleaned = positive.copy()
            else:
                cleaned = positive[bounds.contains(positive[dc.DURATION_COLUMN])].copy()
            outlier_rows += len(positive) - len(cleaned)

            yield cleaned

        self.stats = build_stats(initial_rows, duplicate_rows, non_positive_rows, outlier_rows, bounds)
        logger.info(f"Pass 2 cleaned trip stats: {self.stats}")

    def clean_all(self, chunk_source: ChunkSource) -> pd.DataFrame:
        """Run both passes and concatenate; stats attached like TripCleaner.clean."""
        parts = list(self.clean_chunks(chunk_source))
        if parts:
            out = pd.concat(parts)
        else:
            out = empty_cleaned(pd.DataFrame(columns=dc.TRIP_COLUMNS))
        out.attrs["stats"] = self.stats or build_stats(0, 0, 0, 0, None)
        return out
