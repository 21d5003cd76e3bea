import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apps.api.auth import create_token
from packages import db
from packages.config import load_settings
from services.ingestion.credentials import CredentialManager, CredentialSet


def main():
    parser = argparse.ArgumentParser(description="Create a user and optionally store Strava tokens.")
    parser.add_argument("username")
    parser.add_argument("--access-token", default=None)
    parser.add_argument("--refresh-token", default=None)
    parser.add_argument("--expires-at", type=int, default=None, help="Epoch seconds; defaults to now (forces a refresh).")
    parser.add_argument("--auth-code", default=None, help="Strava OAuth code to exchange for tokens.")
    parser.add_argument("--print-token", action="store_true", help="Print an API bearer token for the user.")
    args = parser.parse_args()

    if not db.db_exists():
        raise SystemExit("DB not initialized. Run scripts/init_db.py first.")

    with db.connect() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id FROM users WHERE username=?", (args.username,))
        row = cur.fetchone()
        if not row:
            cur.execute("INSERT INTO users(username) VALUES(?)", (args.username,))
            cur.execute("SELECT id FROM users WHERE username=?", (args.username,))
            row = cur.fetchone()
        user_id = row[0]
    print(f"User ready: {args.username} (id={user_id})")

    settings = load_settings()
    manager = CredentialManager(
        db.connect,
        settings.strava_client_id,
        settings.strava_client_secret,
        token_url=settings.strava_token_url,
    )
    if args.auth_code:
        creds = manager.exchange_code(user_id, args.auth_code)
        print(f"Strava connected; token expires at {creds.expires_at}")
    elif args.refresh_token:
        manager.store(
            CredentialSet(
                user_id,
                args.access_token or "",
                args.refresh_token,
                args.expires_at if args.expires_at is not None else int(time.time()),
            )
        )
        print("Strava tokens stored")

    if args.print_token:
        print(create_token(user_id, args.username))


if __name__ == "__main__":
    main()
