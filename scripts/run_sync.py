import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages.error_reporting import init_error_reporting
from packages.logging_utils import setup_logging
from services.ingestion.errors import SyncError
from services.ingestion.sync_orchestrator import build_orchestrator, session_payload


setup_logging()
init_error_reporting("sync-cli")
logger = logging.getLogger("runsync.cli")


def _window(args) -> dict | str | None:
    if args.incremental:
        return "incremental"
    if args.days is not None:
        return {"days": args.days}
    if args.after or args.before:
        return {"after": args.after, "before": args.before}
    return None


def main() -> int:
    parser = argparse.ArgumentParser(description="Start, resume, cancel or inspect a Strava sync session.")
    parser.add_argument("action", choices=["start", "resume", "cancel", "status", "history", "cleanup"])
    parser.add_argument("--user", type=int, required=True, help="User id to sync.")
    parser.add_argument("--session", default=None, help="Session id for resume/cancel/status.")
    parser.add_argument("--days", type=float, default=None, help="Only activities from the last N days.")
    parser.add_argument("--after", default=None, help="Lower bound (epoch seconds or ISO timestamp).")
    parser.add_argument("--before", default=None, help="Upper bound (epoch seconds or ISO timestamp).")
    parser.add_argument("--incremental", action="store_true", help="Only activities newer than the latest stored run.")
    parser.add_argument("--follow", action="store_true", help="Keep running chunks until the session is terminal.")
    parser.add_argument("--limit", type=int, default=10, help="History size.")
    parser.add_argument("--keep-days", type=int, default=None, help="Cleanup retention in days.")
    args = parser.parse_args()

    orchestrator = build_orchestrator()
    try:
        if args.action == "history":
            sessions = orchestrator.history(args.user, args.limit)
            print(json.dumps([session.to_dict() for session in sessions], indent=2))
            return 0
        if args.action == "cleanup":
            deleted = orchestrator.cleanup(args.user, args.keep_days)
            print(json.dumps({"deleted": deleted}))
            return 0

        payload = orchestrator.trigger(
            {
                "action": args.action,
                "userId": args.user,
                "sessionId": args.session,
                "window": _window(args),
            }
        )
        if args.follow and args.action in ("start", "resume") and payload["status"] not in ("completed", "failed", "cancelled"):
            session = orchestrator.run_until_done(payload["sessionId"])
            payload = session_payload(session)
    except SyncError as exc:
        logger.error("Sync %s failed: %s", args.action, exc.summary())
        print(json.dumps({"error": {"code": exc.code, "message": exc.summary()}}))
        return 1
    print(json.dumps(payload, indent=2))
    return 0 if payload["status"] != "failed" else 2


if __name__ == "__main__":
    raise SystemExit(main())
