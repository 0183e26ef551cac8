import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Callable, Dict

import mlflow
import pandas as pd
import yaml

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.aggregator import standard_views
from bikeshare_analysis.cleaner import TripCleaner
from bikeshare_analysis.data_loader import DataLoader
from bikeshare_analysis.data_validation import DataValidator, serialize_gx_results
from bikeshare_analysis.errors import AnalysisError
from bikeshare_analysis.inference import categorical_ols, two_way_anova, welch_ttest
from bikeshare_analysis.records import AnovaResult, RegressionResult, TestResult, TTestResult
from bikeshare_analysis.streaming import StreamingTripCleaner

logger = logging.getLogger(__name__)

CROSS_CHECK_TOLERANCE = 1e-9


@dataclass
class AnalysisReport:
    cleaning_stats: dict
    summaries: Dict[str, pd.DataFrame]
    results: Dict[str, TestResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def load_params(params_path: str) -> dict:
    with open(params_path, "r") as f:
        return yaml.safe_load(f)


def safe_log_artifact(path: str, artifact_path: str | None = None) -> None:
    """Log file to MLflow if it exists (no crash if missing)."""
    if path and os.path.exists(path):
        mlflow.log_artifact(path, artifact_path=artifact_path)


def _metric_key(*parts: str) -> str:
    # MLflow metric names may not contain ':'
    return "_".join(parts).replace(":", "_x_")


def result_metrics(name: str, result: TestResult) -> Dict[str, float]:
    """Flatten a test result into MLflow metric key/values."""
    if isinstance(result, TTestResult):
        metrics = {
            "mean_diff": result.mean_diff,
            "ci95_low": result.conf_interval_95[0],
            "ci95_high": result.conf_interval_95[1],
            "t_statistic": result.t_statistic,
            "dof": result.degrees_of_freedom,
            "p_value": result.p_value,
        }
    elif isinstance(result, RegressionResult):
        metrics = {"intercept": result.intercept, "r_squared": result.r_squared}
        for level, coef in result.coefficients.items():
            metrics[f"coef_{level}"] = coef
            metrics[f"p_{level}"] = result.p_values[level]
    elif isinstance(result, AnovaResult):
        metrics = {}
        for effect, row in result.factor_effects.items():
            metrics[f"{effect}_f"] = row.f_statistic
            metrics[f"{effect}_p"] = row.p_value
    else:
        raise TypeError(f"Unknown result type {type(result).__name__}")

    return {_metric_key(name, k): float(v) for k, v in metrics.items() if math.isfinite(v)}


def run_analysis(cleaned: pd.DataFrame) -> tuple[Dict[str, TestResult], Dict[str, str]]:
    """Run every test; a failing test is recorded and skipped, never fatal."""
    tests: Dict[str, Callable[[], TestResult]] = {
        "ttest": lambda: welch_ttest(cleaned),
        "ols": lambda: categorical_ols(cleaned, predictor="rider_type"),
        "ols_rideable": lambda: categorical_ols(cleaned, predictor="rideable_type"),
        "anova": lambda: two_way_anova(cleaned),
    }

    results: Dict[str, TestResult] = {}
    failures: Dict[str, str] = {}
    for name, test in tests.items():
        try:
            results[name] = test()
        except AnalysisError as e:
            logger.warning(f"Skipping {name}: {type(e).__name__}: {e}")
            failures[name] = f"{type(e).__name__}: {e}"

    if "ttest" in results and "ols" in results:
        ttest, ols = results["ttest"], results["ols"]
        g1, g2 = ttest.groups
        if ols.reference_level == g1 and g2 in ols.coefficients:
            gap = abs(ols.coefficients[g2] + ttest.mean_diff)
            if gap > CROSS_CHECK_TOLERANCE * max(1.0, abs(ttest.mean_diff)):
                logger.warning(f"OLS coefficient and t-test mean difference disagree by {gap:.3g}")

    return results, failures


def write_outputs(output_dir: str, summaries: Dict[str, pd.DataFrame], results, failures) -> Dict[str, str]:
    """Write summary CSVs and the inference JSON; returns name -> path."""
    summary_dir = os.path.join(output_dir, "summaries")
    os.makedirs(summary_dir, exist_ok=True)

    paths = {}
    for name, table in summaries.items():
        paths[name] = os.path.join(summary_dir, f"{name}.csv")
        table.to_csv(paths[name])

    paths["inference_results"] = os.path.join(output_dir, "inference_results.json")
    with open(paths["inference_results"], "w") as f:
        json.dump(
            {
                "results": {name: r.model_dump(mode="json") for name, r in results.items()},
                "failures": failures,
            },
            f,
            indent=2,
        )
    return paths


def run_pipeline(params_path: str) -> AnalysisReport:
    params = load_params(params_path)

    # --- Read config ---
    data_path = params["data"]["path"]
    chunksize = params["data"].get("chunksize")

    cleaning = params.get("cleaning", {})
    iqr_multiplier = float(cleaning.get("iqr_multiplier", dc.IQR_MULTIPLIER))
    max_unclean_ratio = float(cleaning.get("max_unclean_ratio", dc.MAX_UNCLEAN_RATIO))

    alpha = float(params.get("analysis", {}).get("alpha", 0.05))

    # Write artifacts to a writable place in containers
    output_dir = os.environ.get("LOCAL_ARTIFACT_DIR") or params.get("output", {}).get(
        "dir", "/tmp/bikeshare_artifacts"
    )
    exp_name = params["mlflow"]["experiment_name"]

    # --- Components ---
    loader = DataLoader(data_path, artifact_dir=output_dir)

    # --- MLflow ---
    mlflow.set_experiment(exp_name)

    with mlflow.start_run() as run:
        logger.info(f"Starting Run: {run.info.run_id}")

        mlflow.log_param("contract_version", dc.CONTRACT_VERSION)
        mlflow.log_param("data_source", data_path)
        mlflow.log_params(
            {
                "iqr_multiplier": iqr_multiplier,
                "quantile_interpolation": dc.QUANTILE_INTERPOLATION,
                "max_unclean_ratio": max_unclean_ratio,
                "alpha": alpha,
                "streaming": bool(chunksize),
            }
        )

        # 1) Load & Clean
        try:
            if chunksize:
                cleaner = StreamingTripCleaner(iqr_multiplier)
                cleaned = cleaner.clean_all(lambda: loader.iter_chunks(int(chunksize)))
            else:
                df = loader.load_data()
                safe_log_artifact(df.attrs.get("dropped_sample_path"))
                cleaned = TripCleaner(iqr_multiplier).clean(df)
        except Exception as e:
            mlflow.set_tag("status", "load_failed")
            logger.exception(f"Loading/cleaning failed: {e}")
            raise

        for k, v in loader.stats.items():
            mlflow.log_metric(f"loader_{k}", float(v))

        stats = cleaned.attrs["stats"]
        mlflow.log_metrics(
            {f"cleaner_{k}": float(v) for k, v in stats.items() if math.isfinite(float(v))}
        )

        # 2) Validate with Great Expectations
        validator = DataValidator(cleaned)
        try:
            validator.validate()
            mlflow.set_tag("data_quality", "passed")
        except Exception as e:
            mlflow.set_tag("data_quality", "failed")
            logger.exception(f"Validation failed: {e}")

            os.makedirs(output_dir, exist_ok=True)
            gx_report_path = os.path.join(output_dir, "gx_report.json")
            if validator.validation_results:
                with open(gx_report_path, "w") as f:
                    json.dump(serialize_gx_results(validator.validation_results), f, indent=2, default=str)
                safe_log_artifact(gx_report_path)

            raise

        # --- QUALITY GATE ---
        if stats["cleaning_ratio"] > max_unclean_ratio:
            mlflow.set_tag("data_quality", "breach")
            error_msg = (
                f"Data Quality Breach! Cleaner removed {stats['cleaning_ratio']:.2%} of rows, "
                f"exceeding the limit of {max_unclean_ratio:.2%}."
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

        # 3) Aggregate
        summaries = standard_views(cleaned)

        # 4) Inference (a failed test is skipped, not fatal)
        results, failures = run_analysis(cleaned)
        for name, result in results.items():
            mlflow.log_metrics(result_metrics(name, result))
            mlflow.set_tag(f"{name}_status", "ok")
        for name in failures:
            mlflow.set_tag(f"{name}_status", "failed")

        if "ttest" in results:
            significant = results["ttest"].p_value < alpha
            mlflow.set_tag("rider_duration_difference", "significant" if significant else "not_significant")

        # 5) Artifacts
        for name, path in write_outputs(output_dir, summaries, results, failures).items():
            safe_log_artifact(path, artifact_path="summaries" if name in summaries else None)

        logger.info("Pipeline finished successfully.")

    return AnalysisReport(
        cleaning_stats=stats,
        summaries=summaries,
        results=results,
        failures=failures,
    )
