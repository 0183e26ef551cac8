from datetime import datetime
from typing import Dict, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field


RideableType = Literal["classic", "electric_bike", "electric_scooter"]
RiderType = Literal["member", "casual"]


# -------------------------------------------------------------------
# Records
# -------------------------------------------------------------------
class TripRecord(BaseModel):
    """One ride as handed over by the RecordSource."""

    model_config = ConfigDict(frozen=True)

    ride_id: str
    rideable_type: RideableType
    started_at: datetime
    ended_at: datetime
    start_station_id: str = Field(min_length=1)
    start_station_name: str = Field(min_length=1)
    end_station_id: str = Field(min_length=1)
    end_station_name: str = Field(min_length=1)
    rider_type: RiderType


class CleanedRecord(TripRecord):
    duration_secs: float
    day_of_week: str


# -------------------------------------------------------------------
# Test results
# -------------------------------------------------------------------
class TTestResult(BaseModel):
    """Welch two-sample comparison of groups[0] against groups[1]."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["welch_ttest"] = "welch_ttest"
    groups: Tuple[str, str]
    mean_diff: float
    conf_interval_95: Tuple[float, float]
    t_statistic: float
    degrees_of_freedom: float
    p_value: float
    group_means: Dict[str, float]
    group_variances: Dict[str, float]
    group_counts: Dict[str, int]


class RegressionResult(BaseModel):
    """OLS fit of a response on one treatment-coded categorical predictor."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["categorical_ols"] = "categorical_ols"
    predictor: str
    reference_level: str
    intercept: float
    coefficients: Dict[str, float]
    r_squared: float
    # Keyed by "Intercept" and by each non-reference level.
    std_errors: Dict[str, float]
    t_statistics: Dict[str, float]
    p_values: Dict[str, float]
    df_resid: int
    n_obs: int


class EffectRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    df: int
    sum_sq: float
    mean_sq: float
    f_statistic: float
    p_value: float


class AnovaResult(BaseModel):
    """Two-way ANOVA table, sequential (Type I) sums of squares."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["two_way_anova"] = "two_way_anova"
    ss_type: Literal["I"] = "I"
    factors: Tuple[str, str]
    factor_effects: Dict[str, EffectRow]
    residual_df: int
    residual_sum_sq: float
    n_obs: int


TestResult = TTestResult | RegressionResult | AnovaResult

