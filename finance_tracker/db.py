import os
import re
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None


DEFAULT_SQLITE_NAME = "finance_tracker.sqlite"
SQLITE_BUSY_TIMEOUT_MS = 5000

_PRAGMA_TABLE_INFO = re.compile(r"\s*PRAGMA\s+table_info\(([^)]+)\)", re.IGNORECASE)


def database_errors():
    """Exception classes raised by whichever backends are importable."""
    errors = [sqlite3.Error]
    if psycopg is not None:
        errors.append(psycopg.Error)
    return tuple(errors)


class LedgerRow(tuple):
    """Postgres row readable by column name as well as position, like sqlite3.Row."""

    def __new__(cls, positions, values):
        row = super().__new__(cls, values)
        row._positions = positions
        return row

    def __getitem__(self, key):
        if isinstance(key, str):
            key = self._positions[key]
        return super().__getitem__(key)


def ledger_row(cursor):
    positions = {column.name: idx for idx, column in enumerate(cursor.description or [])}
    return lambda values: LedgerRow(positions, values)


class LedgerConnection:
    """One API over sqlite3 and psycopg connections; SQL is written for SQLite."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        statement, args = rewrite_sql(self.backend, sql, params)
        return self._conn.execute(statement, args or ())

    def last_insert_id(self):
        return self.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def is_postgres_url(value):
    return bool(value) and value.startswith(("postgresql://", "postgres://"))


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params

    pragma = _PRAGMA_TABLE_INFO.match(sql)
    if pragma:
        table = pragma.group(1).strip().strip("'\"")
        return (
            "SELECT column_name AS name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position",
            (table,),
        )

    statement = sql.replace("last_insert_rowid()", "lastval()")
    if "?" in statement:
        statement = "%s".join(statement.split("?"))

    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return statement, params


def parse_database_config(database_path=None, database_url=None):
    url = (database_url if database_url is not None else os.environ.get("DATABASE_URL", "")).strip()
    if is_postgres_url(url):
        return {
            "backend": "postgres",
            "database_url": url,
            "database_name": urlparse(url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else DEFAULT_SQLITE_NAME,
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(config["database_url"], row_factory=ledger_row)
        return LedgerConnection(conn, backend="postgres")

    db_path = config["database_path"] or DEFAULT_SQLITE_NAME
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    return LedgerConnection(conn, backend="sqlite")
