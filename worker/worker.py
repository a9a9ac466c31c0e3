import logging
import signal
import sys
from typing import Any

from apscheduler.schedulers.blocking import BlockingScheduler

from common import database
from common.config import configure_logging, ensure_directories, settings
from common.errors import StoreError
from worker.cleanup import recover_stalled_jobs
from worker.dispatcher import Dispatcher
from worker.scheduler import schedule_ticks

logger = logging.getLogger(__name__)


def main():
    configure_logging()
    ensure_directories()
    try:
        database.init_db()
    except StoreError as exc:
        logger.error("Worker cannot start: %s", exc)
        sys.exit(1)

    recover_stalled_jobs()

    dispatcher = Dispatcher()
    scheduler = BlockingScheduler()
    schedule_ticks(scheduler, dispatcher)

    def shutdown(signum: int, frame: Any) -> None:
        logger.info("Received signal %s, shutting down worker...", signum)
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info("Worker started (%s mode)", settings.environment)
    dispatcher.tick()
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        # Let in-flight compressions finish; there is no cancellation.
        dispatcher.shutdown(wait=True)
        database.dispose()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
