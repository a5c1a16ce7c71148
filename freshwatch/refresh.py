"""CLI command for running one freshness cycle"""

import logging
import sys

from freshwatch.services.refresh_orchestrator import RefreshOrchestrator
from freshwatch.utils.timestamps import utcnow


def setup_logging() -> None:
    """Configure logging for CLI (stdout for K8s)"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main() -> int:
    """
    Main entry point for the refresh CLI command

    Reclaims abandoned entries, queues every due item and drains the queue.

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        logger.info(f"Starting freshness cycle at {utcnow().isoformat()}")
        orchestrator = RefreshOrchestrator()

        result = orchestrator.run_cycle()
        if not result.success:
            logger.error(f"Freshness cycle failed: {result.error}")
            return 1

        logger.info(
            f"Freshness cycle completed in {result.duration_seconds:.2f}s "
            f"({result.enqueued} queued, {result.processed} processed)"
        )
        return 0
    except FileNotFoundError as e:
        logger.error(f"Configuration file not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
