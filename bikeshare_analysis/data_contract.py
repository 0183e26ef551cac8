"""
bikeshare_analysis/data_contract.py

Single Source of Truth for trip record shape and cleaning rules.
"""

# Versioning allows us to track which rules were active
# for a specific analysis run.
CONTRACT_VERSION = "1.0.0"

# -------------------------------------------------------------------
# System Limits
# -------------------------------------------------------------------
# If the cleaner removes more than this share of rows we assume a
# systemic upstream failure (e.g., a broken export) and stop the run.
MAX_UNCLEAN_RATIO = 0.15


# -------------------------------------------------------------------
# Schema Definition
# -------------------------------------------------------------------
# Every TripRecord attribute. Deduplication compares all of them.
TRIP_COLUMNS = [
    "ride_id",
    "rideable_type",
    "started_at",
    "ended_at",
    "start_station_id",
    "start_station_name",
    "end_station_id",
    "end_station_name",
    "rider_type",
]

TIMESTAMP_COLUMNS = ["started_at", "ended_at"]

# Exports mix whole-second and fractional-second values in one column.
TIMESTAMP_FORMAT = "ISO8601"

# Fields the RecordSource guarantees to be present (rows missing
# any of these are dropped by the loader, never by the cleaner).
IDENTIFYING_COLUMNS = TRIP_COLUMNS

# Derived by the cleaner.
DURATION_COLUMN = "duration_secs"
DAY_OF_WEEK_COLUMN = "day_of_week"
DERIVED_COLUMNS = [DURATION_COLUMN, DAY_OF_WEEK_COLUMN]


# -------------------------------------------------------------------
# Categorical Rules
# -------------------------------------------------------------------
# Order matters: the first level is the default reference level
# for dummy coding.
RIDER_TYPES = ["member", "casual"]
RIDEABLE_TYPES = ["classic", "electric_bike", "electric_scooter"]

CATEGORICAL_DOMAINS = {
    "rider_type": RIDER_TYPES,
    "rideable_type": RIDEABLE_TYPES,
}

WEEKDAYS = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


# -------------------------------------------------------------------
# Source File Mapping (Divvy monthly exports)
# -------------------------------------------------------------------
SOURCE_COLUMN_RENAMES = {"member_casual": "rider_type"}

# Older exports call pedal bikes "docked_bike"; newer ones "classic_bike".
RIDEABLE_TYPE_ALIASES = {
    "classic_bike": "classic",
    "docked_bike": "classic",
}


# -------------------------------------------------------------------
# Outlier Rule
# -------------------------------------------------------------------
# Tukey fences: [Q1 - k*IQR, Q3 + k*IQR], inclusive on both ends.
IQR_MULTIPLIER = 1.5

# Quantile position (n - 1) * p, linear between order statistics.
QUANTILE_INTERPOLATION = "linear"
