import argparse
from typing import List, Optional

from sqlalchemy import inspect

from .database import Base, DatabaseConnection
from . import models  # noqa: F401  registers the audit tables on Base


def create_tables(connection_string: Optional[str] = None) -> List[str]:
    """Create the audit tables if missing. Returns the tables now present."""
    db = DatabaseConnection(connection_string)
    try:
        db.init_db()
        existing = set(inspect(db.engine).get_table_names())
        return sorted(name for name in Base.metadata.tables if name in existing)
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Create the order/alert audit tables")
    parser.add_argument("--db-url", default=None, help="Database URL (defaults to DB_URL)")
    args = parser.parse_args()

    tables = create_tables(args.db_url)
    print(f"Audit tables ready: {', '.join(tables)}")


if __name__ == "__main__":
    main()
