import argparse
import logging

from bikeshare_analysis.pipeline import run_pipeline


# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logging.getLogger("great_expectations").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Clean Divvy trips and compare member vs casual riders")
    parser.add_argument("--config", default="params.yaml", help="Path to config file")
    args = parser.parse_args()

    report = run_pipeline(args.config)
    for name, reason in report.failures.items():
        logger.warning(f"{name} skipped -> {reason}")
