import argparse
import json
from datetime import datetime

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "login_id", "name", "email", "password_hash", "account_key", "created_at"},
        "indexes": set(),
    },
    "expenses": {
        "columns": {
            "id",
            "account_key",
            "date",
            "amount",
            "remark",
            "bank_type",
            "card_type",
            "expense_type",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_expenses_account_date", "idx_expenses_merge_key"},
    },
    "option_lists": {
        "columns": {"id", "account_key", "list_key", "items", "updated_at"},
        "indexes": {"uq_option_lists_account_list"},
    },
    "investments": {
        "columns": {
            "id",
            "account_key",
            "date",
            "investment_mode",
            "investment_type",
            "current_value",
            "investment_amount",
            "return_value",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_investments_account_date", "idx_investments_account_pair"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif column not in get_table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            login_id TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            email TEXT,
            password_hash TEXT NOT NULL,
            account_key TEXT UNIQUE NOT NULL,
            created_at TEXT
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_key TEXT NOT NULL,
            date TEXT NOT NULL,
            amount DOUBLE PRECISION NOT NULL,
            remark TEXT NOT NULL DEFAULT '',
            bank_type TEXT NOT NULL DEFAULT '',
            card_type TEXT NOT NULL DEFAULT '',
            expense_type TEXT NOT NULL DEFAULT '',
            created_at TEXT
        )
        """,
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_account_date ON expenses(account_key, date)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_expenses_merge_key "
        "ON expenses(account_key, date, bank_type, card_type, expense_type)"
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS option_lists (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_key TEXT NOT NULL,
            list_key TEXT NOT NULL,
            items TEXT NOT NULL DEFAULT '[]',
            updated_at TEXT
        )
        """,
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_option_lists_account_list ON option_lists(account_key, list_key)"
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS investments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_key TEXT NOT NULL,
            date TEXT NOT NULL,
            investment_mode TEXT NOT NULL DEFAULT '',
            investment_type TEXT NOT NULL DEFAULT '',
            current_value DOUBLE PRECISION NOT NULL,
            investment_amount DOUBLE PRECISION NOT NULL,
            return_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            created_at TEXT
        )
        """,
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_investments_account_date ON investments(account_key, date)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_investments_account_pair "
        "ON investments(account_key, investment_mode, investment_type)"
    )


def migration_004(conn):
    add_column_if_missing(conn, "expenses", "updated_at TEXT")
    add_column_if_missing(conn, "investments", "updated_at TEXT")
    # return_value is derived; repair rows written by clients that stored it independently
    conn.execute(
        "UPDATE investments SET return_value = current_value - investment_amount "
        "WHERE return_value IS NULL OR return_value <> current_value - investment_amount"
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)
    applied_versions = {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = (
        db_or_config_or_path
        if isinstance(db_or_config_or_path, dict)
        else parse_database_config(db_or_config_or_path)
    )
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_indexes.extend(idx for idx in sorted(table_spec["indexes"]) if not index_exists(conn, idx))

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
