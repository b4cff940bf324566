from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from mealdesk import models  # noqa: F401
from mealdesk.config import settings
from mealdesk.db import Base


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        existing = set(inspect(engine).get_table_names())
        missing = sorted(set(Base.metadata.tables) - existing)
        if missing:
            print(f"Missing tables: {', '.join(missing)}")
        else:
            print(f"All {len(Base.metadata.tables)} tables present")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
