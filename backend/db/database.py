from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings


engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)


# Enable WAL mode for better concurrent read performance
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_startup_migrations() -> None:
    """Apply lightweight schema fixes for existing SQLite databases."""
    inspector = inspect(engine)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    user_columns = _table_columns("users")
    meal_plan_columns = _table_columns("meal_plans")
    recipe_columns = _table_columns("meal_plan_recipes")
    progress_columns = _table_columns("user_progress")
    if not meal_plan_columns and not recipe_columns and not progress_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if user_columns and "timezone" not in user_columns:
        alter_statements.append("ALTER TABLE users ADD COLUMN timezone TEXT")
    if meal_plan_columns:
        if "is_favorite" not in meal_plan_columns:
            alter_statements.append("ALTER TABLE meal_plans ADD COLUMN is_favorite BOOLEAN DEFAULT 0")
        if "is_current" not in meal_plan_columns:
            alter_statements.append("ALTER TABLE meal_plans ADD COLUMN is_current BOOLEAN DEFAULT 0")
        if "tags" not in meal_plan_columns:
            alter_statements.append("ALTER TABLE meal_plans ADD COLUMN tags TEXT")
    if recipe_columns:
        if "is_cooked" not in recipe_columns:
            alter_statements.append("ALTER TABLE meal_plan_recipes ADD COLUMN is_cooked BOOLEAN DEFAULT 0")
        if "notes" not in recipe_columns:
            alter_statements.append("ALTER TABLE meal_plan_recipes ADD COLUMN notes TEXT")
    if progress_columns:
        if "snack_completed" not in progress_columns:
            alter_statements.append("ALTER TABLE user_progress ADD COLUMN snack_completed BOOLEAN DEFAULT 0")
        if "shopping_completed" not in progress_columns:
            alter_statements.append("ALTER TABLE user_progress ADD COLUMN shopping_completed BOOLEAN DEFAULT 0")

    with engine.begin() as conn:
        for stmt in alter_statements:
            conn.execute(text(stmt))

        if meal_plan_columns:
            # Backfill nulls for any rows created before defaults existed.
            conn.execute(text("UPDATE meal_plans SET status = COALESCE(status, 'active')"))
            conn.execute(text("UPDATE meal_plans SET is_favorite = COALESCE(is_favorite, 0)"))
            conn.execute(text("UPDATE meal_plans SET is_current = COALESCE(is_current, 0)"))
            conn.execute(text("UPDATE meal_plans SET is_current = 0 WHERE status = 'archived'"))
            # Older builds could flag two plans current; keep the most recently updated one.
            conn.execute(text(
                """
                UPDATE meal_plans
                SET is_current = 0
                WHERE is_current = 1
                  AND id NOT IN (
                    SELECT id FROM (
                        SELECT id,
                               ROW_NUMBER() OVER (
                                   PARTITION BY user_id
                                   ORDER BY updated_at DESC, id DESC
                               ) AS rn
                        FROM meal_plans
                        WHERE is_current = 1 AND status = 'active'
                    )
                    WHERE rn = 1
                  )
                """
            ))
            conn.execute(text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_meal_plans_one_current
                ON meal_plans (user_id)
                WHERE is_current = 1 AND status = 'active'
                """
            ))
            conn.execute(text(
                """
                CREATE INDEX IF NOT EXISTS idx_meal_plans_user_status
                ON meal_plans (user_id, status, start_date)
                """
            ))
            conn.execute(text(
                """
                CREATE INDEX IF NOT EXISTS idx_meal_plans_user_end
                ON meal_plans (user_id, end_date)
                """
            ))

        if recipe_columns:
            conn.execute(text("UPDATE meal_plan_recipes SET is_cooked = COALESCE(is_cooked, 0)"))
            conn.execute(text(
                """
                CREATE INDEX IF NOT EXISTS idx_meal_plan_recipes_plan_day
                ON meal_plan_recipes (meal_plan_id, day_index)
                """
            ))

        if progress_columns:
            # Dedupe legacy rows before enforcing one-record-per-day uniqueness.
            conn.execute(text(
                """
                DELETE FROM user_progress
                WHERE id NOT IN (
                    SELECT MAX(id)
                    FROM user_progress
                    GROUP BY user_id, date
                )
                """
            ))
            conn.execute(text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_user_progress_user_date
                ON user_progress (user_id, date)
                """
            ))

        conn.execute(text(
            """
            CREATE TABLE IF NOT EXISTS plan_resolution_cursors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL UNIQUE,
                last_checked_date TEXT,
                last_plan_id INTEGER,
                updated_at DATETIME,
                FOREIGN KEY(user_id) REFERENCES users(id)
            )
            """
        ))
