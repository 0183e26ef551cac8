import logging
import pandas as pd
import great_expectations as gx
import great_expectations.expectations as gxe
from great_expectations.core.expectation_suite import ExpectationSuite
import bikeshare_analysis.data_contract as dc

logger = logging.getLogger(__name__)


class DataValidator:
    def __init__(self, df: pd.DataFrame):
        self.df = df
        # Ephemeral Context: In-memory configuration suitable for automated pipelines.
        self.context = gx.get_context(mode="ephemeral")
        self.datasource_name = "pandas_datasource"
        self.asset_name = "trip_dataframe"
        self.suite_name = "trip_quality_suite"
        self.validation_results = None

    def build_suite(self) -> ExpectationSuite:
        suite = ExpectationSuite(name=self.suite_name)

        # --- Rule A: Structural Integrity ---
        suite.add_expectation(gxe.ExpectTableRowCountToBeBetween(min_value=1))
        for col in dc.TRIP_COLUMNS:
            suite.add_expectation(gxe.ExpectColumnToExist(column=col))

        # --- Rule B: Identifying fields (RecordSource contract) ---
        for col in dc.IDENTIFYING_COLUMNS:
            suite.add_expectation(gxe.ExpectColumnValuesToNotBeNull(column=col))

        # --- Rule C: Categorical Domains ---
        for col, domain in dc.CATEGORICAL_DOMAINS.items():
            suite.add_expectation(
                gxe.ExpectColumnValuesToBeInSet(column=col, value_set=list(domain))
            )

        return suite

    def _batch(self):
        try:
            ds = self.context.data_sources.get(self.datasource_name)
        except KeyError:
            ds = self.context.data_sources.add_pandas(self.datasource_name)

        try:
            asset = ds.get_asset(self.asset_name)
        except LookupError:
            asset = ds.add_dataframe_asset(name=self.asset_name)

        batch_def = asset.add_batch_definition_whole_dataframe("cleaned_trips")
        return batch_def.get_batch(batch_parameters={"dataframe": self.df})

    def failed_checks(self) -> list:
        """(column, expectation type, unexpected count) for every failed expectation."""
        if self.validation_results is None:
            return []
        return [
            (
                res.expectation_config.kwargs.get("column", "Table-Level"),
                res.expectation_config.type,
                res.result.get("unexpected_count", 0),
            )
            for res in self.validation_results.results
            if not res.success
        ]

    def validate(self) -> bool:
        rides = len(self.df)
        logger.info(f"Validating {rides} cleaned trips against contract v{dc.CONTRACT_VERSION}...")

        self.validation_results = self._batch().validate(self.build_suite())

        if not self.validation_results.success:
            failed = self.failed_checks()
            for col, rule, unexpected in failed:
                logger.error(f"   - Trip violation: {col} | Rule: {rule} | Unexpected rows: {unexpected}")

            raise ValueError(
                f"Critical Data Validation Failed: {len(failed)} trip check(s) failed "
                f"over {rides} rides (columns: {sorted({c for c, _, _ in failed})}). "
                "Check the gx_report artifact for details."
            )

        logger.info(f"Great Expectations passed for {rides} trips.")
        return True


def serialize_gx_results(results) -> dict:
    output = {"success": results.success, "results": []}
    for r in results.results:
        output["results"].append(
            {
                "success": r.success,
                "expectation": r.expectation_config.type,
                "column": r.expectation_config.kwargs.get("column"),
                "unexpected_list": r.result.get("partial_unexpected_list", []),
            }
        )
    return output
