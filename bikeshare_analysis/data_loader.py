import glob
import logging
import os
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import pandas as pd
import pyarrow.parquet as pq

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.errors import InvalidRecordError

logger = logging.getLogger(__name__)

STRING_COLUMNS = [c for c in dc.TRIP_COLUMNS if c not in dc.TIMESTAMP_COLUMNS]
_SOURCE_NAMES = {v: k for k, v in dc.SOURCE_COLUMN_RENAMES.items()}
WANTED_COLUMNS = set(dc.TRIP_COLUMNS) | set(dc.SOURCE_COLUMN_RENAMES)


class DataLoader:
    """
    Defensive trip loader (the RecordSource):
    - Reads one Divvy export, a directory of them, or a glob pattern (CSV or parquet)
    - Maps source columns onto the trip contract
    - Drops rows with missing identifying fields or out-of-contract categories
    - Writes a sample of dropped rows to a writable artifact dir (NOT project root)
    - Attaches stats + artifact paths on df.attrs for the pipeline to log
    """

    def __init__(self, path: str, artifact_dir: str | None = None):
        self.path = path
        self.artifact_dir = artifact_dir or os.environ.get("LOCAL_ARTIFACT_DIR", "/tmp/bikeshare_artifacts")
        self.stats: dict = {}

    def _ensure_artifact_dir(self) -> str:
        os.makedirs(self.artifact_dir, exist_ok=True)
        return self.artifact_dir

    def resolve_files(self) -> List[str]:
        if os.path.isdir(self.path):
            pattern = os.path.join(self.path, "*")
        else:
            pattern = self.path
        files = sorted(
            fp
            for fp in glob.glob(pattern)
            if fp.endswith((".csv", ".parquet")) and not os.path.basename(fp).startswith("._")
        )
        if not files:
            raise FileNotFoundError(f"No trip files found at {self.path}")
        return files

    def _read(self, fp: str) -> pd.DataFrame:
        if fp.endswith(".parquet"):
            return pd.read_parquet(fp)
        return pd.read_csv(fp, usecols=lambda c: c in WANTED_COLUMNS, dtype=str)

    def _iter_raw(self, fp: str, chunksize: int) -> Iterator[pd.DataFrame]:
        if fp.endswith(".parquet"):
            for batch in pq.ParquetFile(fp).iter_batches(batch_size=chunksize):
                yield batch.to_pandas()
        else:
            yield from pd.read_csv(fp, usecols=lambda c: c in WANTED_COLUMNS, dtype=str, chunksize=chunksize)

    def conform(self, df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame, dict]:
        """Map a raw export onto the trip contract. Returns (kept, dropped, stats)."""
        df = df.rename(columns=dc.SOURCE_COLUMN_RENAMES)

        # 1) Critical schema check (fail fast)
        missing_cols = [c for c in dc.TRIP_COLUMNS if c not in df.columns]
        if missing_cols:
            raise InvalidRecordError(
                f"Schema Violation: Missing columns {[_SOURCE_NAMES.get(c, c) for c in missing_cols]}"
            )
        df = df[dc.TRIP_COLUMNS].copy()
        raw_count = len(df)

        # 2) Type enforcement
        for col in STRING_COLUMNS:
            df[col] = df[col].astype("string").str.strip().replace("", pd.NA)
        df["rideable_type"] = df["rideable_type"].replace(dc.RIDEABLE_TYPE_ALIASES)
        for col in dc.TIMESTAMP_COLUMNS:
            df[col] = pd.to_datetime(df[col], format=dc.TIMESTAMP_FORMAT, errors="coerce")

        # 3) Rule masks (observability)
        mask_present = df[STRING_COLUMNS].notna().all(axis=1)
        mask_timestamps = df[dc.TIMESTAMP_COLUMNS].notna().all(axis=1)
        mask_rideable = df["rideable_type"].isin(dc.RIDEABLE_TYPES)
        mask_rider = df["rider_type"].isin(dc.RIDER_TYPES)

        valid_mask = mask_present & mask_timestamps & mask_rideable & mask_rider

        kept = df[valid_mask].copy()
        for col in STRING_COLUMNS:
            kept[col] = kept[col].astype(object)

        stats = {
            "initial_rows": raw_count,
            "loaded_rows": len(kept),
            "dropped_rows": raw_count - len(kept),
            "violation_missing_field": int((~mask_present).sum()),
            "violation_timestamp": int((~mask_timestamps).sum()),
            "violation_rideable_type": int((mask_present & ~mask_rideable).sum()),
            "violation_rider_type": int((mask_present & ~mask_rider).sum()),
        }
        return kept, df[~valid_mask], stats

    def _write_dropped_sample(self, dropped: pd.DataFrame) -> Optional[str]:
        try:
            self._ensure_artifact_dir()
            ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            path = os.path.join(self.artifact_dir, f"dropped_trips_sample_{ts}.csv")
            dropped.head(100).to_csv(path, index=False)
            logger.info(f"Saved dropped rows sample to: {path}")
            return path
        except OSError as e:
            # A missing sample must not stop the run; the quality gates still apply.
            logger.warning(f"Could not write dropped sample CSV: {e}")
            return None

    def load_data(self) -> pd.DataFrame:
        files = self.resolve_files()
        logger.info(f"Loading {len(files)} trip file(s) from {self.path}...")

        frames = []
        for fp in files:
            try:
                frames.append(self._read(fp))
            except Exception as e:
                logger.error(f"Failed to read trip file {fp}: {e}")
                raise

        df, dropped, stats = self.conform(pd.concat(frames, ignore_index=True))
        stats["files"] = len(files)
        logger.info(f"Loaded trip stats: {stats}")

        dropped_sample_path = self._write_dropped_sample(dropped) if len(dropped) else None

        if df.empty:
            raise ValueError("Data Quality Critical: no usable trip rows after loading.")

        self.stats = stats
        df.attrs["stats"] = stats
        df.attrs["dropped_sample_path"] = dropped_sample_path
        return df

    def iter_chunks(self, chunksize: int) -> Iterator[pd.DataFrame]:
        """Conformed chunks across all files, in file order. Stats accumulate on self.stats."""
        totals: dict = {"files": 0}
        for fp in self.resolve_files():
            totals["files"] += 1
            for raw in self._iter_raw(fp, chunksize):
                kept, _, stats = self.conform(raw)
                for k, v in stats.items():
                    totals[k] = totals.get(k, 0) + v
                yield kept
        self.stats = totals
        logger.info(f"Streamed trip stats: {totals}")
