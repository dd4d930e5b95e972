"""HFE webhook worker entry point."""

import logging
import os
import signal
import threading
from pathlib import Path

from hfe_api.config import env
from hfe_api.db.engine import build_engine, build_sessionmaker
from hfe_api.queue.sqs_client import build_sqs_boto_client
from hfe_api.utils import configure_json_logging
from hfe_worker.loops.sqs_loop import WorkerLoop

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

READY_FILE = Path(os.getenv("HFE_WORKER_READY_FILE", "/tmp/worker-ready"))

_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, finishing current batch before exit")
    _shutdown_event.set()


def main() -> None:
    """Main entry point for the webhook worker."""
    # Clear any readiness file left by a previous container run
    READY_FILE.unlink(missing_ok=True)

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    # Fail fast: ConfigurationError if required settings are missing
    database_url = env.get_database_url()
    queue_url = env.get_sqs_queue_url()
    sqs_client = build_sqs_boto_client()

    engine = build_engine(database_url)
    session_factory = build_sessionmaker(engine)

    worker = WorkerLoop(
        sqs_client=sqs_client,
        session_factory=session_factory,
        queue_url=queue_url,
        shutdown_event=_shutdown_event,
        wait_time_seconds=int(os.getenv("SQS_WAIT_TIME_SECONDS", "20")),
        max_messages=int(os.getenv("SQS_MAX_MESSAGES", "10")),
    )

    logger.info("Starting HFE webhook worker", extra={"environment": env.get_hfe_env()})

    READY_FILE.write_text("ready\n")
    logger.info(f"Readiness file created: {READY_FILE}")

    try:
        worker.run_forever()
    finally:
        READY_FILE.unlink(missing_ok=True)
        engine.dispose()
        logger.info("Worker shutdown complete")


if __name__ == "__main__":
    main()
