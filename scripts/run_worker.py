import logging
from pathlib import Path
import sys
import threading
import time

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages.config import WORKER_INTERVAL_SEC
from packages.db import DATABASE_ERRORS
from packages.error_reporting import init_error_reporting
from packages.logging_utils import setup_logging
from packages.metrics import inc
from services.ingestion.errors import SessionLocked, SyncError
from services.ingestion.sync_orchestrator import SyncOrchestrator, build_orchestrator


setup_logging()
init_error_reporting("worker")
logger = logging.getLogger("runsync.worker")


def advance_sessions(orchestrator: SyncOrchestrator, limit: int = 50) -> int:
    """Run one chunk for each session nobody is currently advancing."""
    advanced = 0
    for session in orchestrator.resumable_sessions(limit):
        try:
            result = orchestrator.run_chunk(session.id)
        except SessionLocked:
            # Another worker claimed it between listing and claiming.
            continue
        except SyncError as exc:
            logger.warning("Session %s could not advance: %s", session.id, exc.summary())
            continue
        advanced += 1
        inc("worker_chunks_total")
        logger.info("Advanced session %s -> %s", session.id, result.status)
    return advanced


def schedule_sync(stop_event: threading.Event, orchestrator: SyncOrchestrator, interval_sec: int = WORKER_INTERVAL_SEC):
    last_cleanup = 0.0
    while not stop_event.is_set():
        try:
            advanced = advance_sessions(orchestrator)
            if advanced:
                # More pages are usually waiting; go again without sleeping.
                continue
            if time.time() - last_cleanup > 3600:
                orchestrator.cleanup()
                last_cleanup = time.time()
        except DATABASE_ERRORS as exc:
            inc("worker_db_errors_total")
            logger.error("Worker pass failed on the database: %s", type(exc).__name__)
        for _ in range(interval_sec):
            if stop_event.is_set():
                return
            time.sleep(1)


def main():
    orchestrator = build_orchestrator()
    stop_event = threading.Event()
    scheduler = threading.Thread(
        target=schedule_sync,
        args=(stop_event, orchestrator),
        daemon=True,
    )
    scheduler.start()

    logger.info("Worker running. Pending sync sessions are advanced every %ss.", WORKER_INTERVAL_SEC)
    logger.info("Press Ctrl+C to stop.")
    try:
        while scheduler.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        stop_event.set()


if __name__ == "__main__":
    main()
