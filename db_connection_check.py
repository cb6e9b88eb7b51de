from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from restopos import models  # noqa: F401
from restopos.config import settings
from restopos.db import Base


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return
    print("DB connection OK")
    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        print("missing tables: " + ", ".join(missing))
    else:
        print("schema OK")


if __name__ == "__main__":
    main()
