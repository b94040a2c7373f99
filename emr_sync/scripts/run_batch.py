"""
CLI entry point for the scheduled EMR import (cron / external scheduler).
Run with:
    python -m emr_sync.scripts.run_batch --days-back 2 --max-retries 3

Exit status: 0 success, 1 batch import failed, 2 invalid configuration.
"""
import argparse
import logging
import sys

from emr_sync.config import settings
from emr_sync.models import emr  # noqa: F401
from emr_sync.models.database import Base, SessionLocal, engine
from emr_sync.sync.batch import BatchRetryDriver
from emr_sync.sync.orchestrator import build_orchestrator
from emr_sync.sync.types import BatchImportFailedError, InvalidInputError

log = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the scheduled EMR import")
    parser.add_argument("--days-back", type=int, default=settings.BATCH_DAYS_BACK)
    parser.add_argument("--max-retries", type=int, default=settings.BATCH_MAX_RETRIES)
    args = parser.parse_args(argv)

    Base.metadata.create_all(bind=engine)
    driver = BatchRetryDriver(build_orchestrator(SessionLocal))

    try:
        result = driver.run_batch(days_back=args.days_back, max_retries=args.max_retries)
    except InvalidInputError as exc:
        log.error("Invalid batch configuration: %s", exc.cause)
        return 2
    except BatchImportFailedError as exc:
        log.error("%s", exc.cause)
        return 1

    log.info("Batch import complete: %s", result.to_dict())
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)-5s - %(message)s")
    sys.exit(main())
