"""
Create the tasks, calendar_outbox and oauth_google_tokens tables and their indexes.

Usage:
    python migrations/create_calendar_outbox_tables.py
    python migrations/create_calendar_outbox_tables.py --database-url postgresql://...

The script is idempotent and safe to run multiple times. It inspects the current
schema and only creates what is missing.
"""

import argparse
import os
import sys

from dotenv import load_dotenv

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    inspect,
)
from sqlalchemy.exc import OperationalError, ProgrammingError

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_SQLITE_PATH = os.path.join(ROOT_DIR, "instance", "calsync.sqlite")

# Load environment variables from a .env file if present
load_dotenv()

metadata = MetaData()

TASKS = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(200), nullable=False),
    Column("description", Text, nullable=True),
    Column("status", String(20), nullable=False),
    Column("start_at", DateTime, nullable=True),
    Column("due_at", DateTime, nullable=True),
    Column("calendar_sync_enabled", Boolean, nullable=False),
    Column("calendar_event_id", String(100), nullable=True),
    Column("deleted", Boolean, nullable=False),
    Column("deleted_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

CALENDAR_OUTBOX = Table(
    "calendar_outbox",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("task_id", Integer, nullable=False),
    Column("op_type", String(10), nullable=False),
    Column("payload", Text, nullable=False),
    Column("status", String(15), nullable=False),
    Column("retry_count", Integer, nullable=False),
    Column("next_retry_at", DateTime, nullable=True),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

OAUTH_GOOGLE_TOKENS = Table(
    "oauth_google_tokens",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=False),
    Column("expiry_at", DateTime, nullable=False),
    Column("scope", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

INDEXES = [
    Index("idx_outbox_status_next_retry", CALENDAR_OUTBOX.c.status, CALENDAR_OUTBOX.c.next_retry_at),
    Index("idx_outbox_task_created", CALENDAR_OUTBOX.c.task_id, CALENDAR_OUTBOX.c.created_at),
    Index("idx_outbox_task_status_optype", CALENDAR_OUTBOX.c.task_id, CALENDAR_OUTBOX.c.status,
          CALENDAR_OUTBOX.c.op_type),
]


def normalize_sqlite_path(path: str) -> str:
    """Return a SQLAlchemy-friendly SQLite URL for the given path."""
    if not os.path.isabs(path):
        path = os.path.join(ROOT_DIR, path)
    return f"sqlite:///{path}"


def infer_database_url(cli_url: str = None) -> str:
    """Figure out which database to hit, honoring CLI and environment defaults."""
    candidates = [
        cli_url,
        os.environ.get("DATABASE_URL"),
        os.environ.get("PRODUCTION_DATABASE_URL"),
        os.environ.get("SANDBOX_DATABASE_URL"),
        os.environ.get("LOCAL_DATABASE_URL"),
    ]

    for value in candidates:
        if not value:
            continue

        value = value.strip()
        if value.startswith("postgres://"):
            # SQLAlchemy expects postgresql://
            return value.replace("postgres://", "postgresql://", 1)

        if value.startswith(("postgresql://", "mysql://", "mariadb://", "sqlite://")):
            return value

        # Treat anything else as a filesystem path to a SQLite DB
        return normalize_sqlite_path(value)

    return normalize_sqlite_path(DEFAULT_SQLITE_PATH)


def index_exists(inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def migrate(database_url: str = None) -> bool:
    """Create any missing tables and indexes."""
    db_url = infer_database_url(database_url)
    print(f"Connecting to database: {db_url}")

    if db_url.startswith("sqlite:///"):
        os.makedirs(os.path.dirname(db_url[len("sqlite:///"):]) or ".", exist_ok=True)

    engine = create_engine(db_url)

    try:
        inspector = inspect(engine)
        with engine.begin() as conn:
            for table in metadata.sorted_tables:
                if inspector.has_table(table.name):
                    print(f"✓ Table '{table.name}' already exists.")
                    continue
                print(f"  Creating table '{table.name}'...")
                table.create(conn)

        inspector = inspect(engine)
        with engine.begin() as conn:
            for index in INDEXES:
                if index_exists(inspector, index.table.name, index.name):
                    print(f"✓ Index '{index.name}' already exists.")
                    continue
                print(f"  Creating index '{index.name}'...")
                index.create(conn)

        inspector = inspect(engine)
        missing = [table.name for table in metadata.sorted_tables if not inspector.has_table(table.name)]
        if missing:
            print(f"\n✗ Tables not created: {', '.join(missing)}. Please verify manually.")
            return False

        print("\n✓ Migration completed successfully!")
        return True

    except (OperationalError, ProgrammingError) as exc:
        print(f"✗ Database error while creating tables: {exc}")
        return False
    finally:
        engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create calendar outbox, task and OAuth token tables.")
    parser.add_argument(
        "--database-url",
        help="Override database URL (otherwise inferred from env or defaults).",
    )
    args = parser.parse_args()

    success = migrate(args.database_url)
    sys.exit(0 if success else 1)
