"""Main entry point for the analytics population pipeline"""

import argparse
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST, before any other imports
# Find the .env file in the project root
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

from gastos_analytics.orchestrator.population_orchestrator import AnalyticsOrchestrator
from gastos_analytics.utils.config_loader import load_config
from gastos_analytics.utils.logging import get_logger

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Populate analytics collections from procurement records")
    parser.add_argument("--config", help="Path to pipeline YAML (default: PIPELINE_CONFIG or config/pipeline.yaml)")
    parser.add_argument(
        "--stages",
        help="Comma-separated stages to run, e.g. amounts,anomalies (default: all, in configured order)"
    )
    parser.add_argument("--batch-size", type=int, help="Records per read batch, overriding the config")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    logger.info("=" * 60)
    logger.info("GASTOS ANALYTICS - Population Pipeline")
    logger.info("=" * 60)

    try:
        config = load_config(args.config)
        stages = [stage.strip() for stage in args.stages.split(",") if stage.strip()] if args.stages else None

        orchestrator = AnalyticsOrchestrator(config=config, batch_size=args.batch_size)
        results = orchestrator.run_population_cycle(stages)

        # Print summary
        logger.info("=" * 60)
        logger.info("RUN SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Run ID: {results['run_id']}")
        logger.info(f"Status: {results['status']}")
        logger.info(f"Records Processed: {results['records_processed']}")
        logger.info(f"Entities Upserted: {results['entities_upserted']}")
        logger.info(f"Anomalies Found: {results['anomalies_found']}")
        for stage, stage_report in results['stages'].items():
            logger.info(
                f"Stage {stage}: processed={stage_report['processed']} upserted={stage_report['upserted']} "
                f"skipped={stage_report['skipped']} failed={stage_report['failed']}"
            )
        logger.info(f"Duration: {results['duration_seconds']:.1f}s")
        logger.info("=" * 60)

        return results

    except Exception as e:
        logger.error(f"Main execution failed: {e}")
        raise


if __name__ == "__main__":
    main()
