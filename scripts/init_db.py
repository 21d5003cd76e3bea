import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages import db
from packages.config import DB_PATH


def main() -> None:
    if not db.is_postgres():
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    with db.connect() as conn:
        schema = db.init_schema(conn)
    print(f"Initialized {schema}")


if __name__ == "__main__":
    main()
