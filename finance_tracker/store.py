import json
import logging
from datetime import date, datetime

from .ledger import (
    DEFAULT_OPTION_LISTS,
    compute_return_value,
    merge_or_insert_expense,
    normalize_option_list,
)


logger = logging.getLogger(__name__)

EXPENSE_COLUMNS = ("date", "amount", "remark", "bank_type", "card_type", "expense_type")
INVESTMENT_COLUMNS = (
    "date",
    "investment_mode",
    "investment_type",
    "current_value",
    "investment_amount",
    "return_value",
)
NUMERIC_COLUMNS = {"amount", "current_value", "investment_amount", "return_value"}
LOAD_MODES = {
    "expenses": ("expenses",),
    "investments": ("investments",),
    "total_assets": ("expenses", "investments"),
}


class MissingAccountKeyError(RuntimeError):
    """Raised when an operation has no account to scope its records to."""


class RecordNotFoundError(LookupError):
    """Raised when a record id does not exist for the account."""


class UnknownListError(LookupError):
    """Raised for option list keys outside the known vocabularies."""


def require_account_key(account_key):
    key = (account_key or "").strip() if isinstance(account_key, str) else ""
    if not key:
        raise MissingAccountKeyError("Account key is missing")
    return key


def _now_text():
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def _record_from_row(row, columns):
    record = {"id": row["id"]}
    for column in columns:
        value = row[column]
        record[column] = float(value) if column in NUMERIC_COLUMNS else (value or "")
    return record


def _list(db, table, columns, account_key):
    account_key = require_account_key(account_key)
    rows = db.execute(
        f"SELECT id, {', '.join(columns)} FROM {table} WHERE account_key = ? ORDER BY created_at DESC, id DESC",
        (account_key,),
    ).fetchall()
    return [_record_from_row(row, columns) for row in rows]


def _get(db, table, columns, account_key, record_id):
    account_key = require_account_key(account_key)
    row = db.execute(
        f"SELECT id, {', '.join(columns)} FROM {table} WHERE id = ? AND account_key = ?",
        (record_id, account_key),
    ).fetchone()
    if row is None:
        raise RecordNotFoundError(f"{table[:-1].capitalize()} {record_id} not found")
    return _record_from_row(row, columns)


def _insert(db, table, columns, account_key, record):
    account_key = require_account_key(account_key)
    placeholders = ", ".join(["?"] * (len(columns) + 3))
    now = _now_text()
    db.execute(
        f"INSERT INTO {table} (account_key, {', '.join(columns)}, created_at, updated_at) VALUES ({placeholders})",
        (account_key, *[record[column] for column in columns], now, now),
    )
    record_id = db.last_insert_id()
    db.commit()
    logger.debug("Inserted %s id=%s account_key=%s", table, record_id, account_key)
    return record_id


def _update(db, table, columns, account_key, record_id, record):
    account_key = require_account_key(account_key)
    assignments = ", ".join(f"{column} = ?" for column in columns)
    result = db.execute(
        f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ? AND account_key = ?",
        (*[record[column] for column in columns], _now_text(), record_id, account_key),
    )
    if result.rowcount == 0:
        db.rollback()
        raise RecordNotFoundError(f"{table[:-1].capitalize()} {record_id} not found")
    db.commit()
    logger.debug("Updated %s id=%s account_key=%s", table, record_id, account_key)


def _delete(db, table, account_key, record_id):
    account_key = require_account_key(account_key)
    result = db.execute(f"DELETE FROM {table} WHERE id = ? AND account_key = ?", (record_id, account_key))
    if result.rowcount == 0:
        db.rollback()
        raise RecordNotFoundError(f"{table[:-1].capitalize()} {record_id} not found")
    db.commit()
    logger.debug("Deleted %s id=%s account_key=%s", table, record_id, account_key)


def list_expenses(db, account_key):
    return _list(db, "expenses", EXPENSE_COLUMNS, account_key)


def get_expense(db, account_key, expense_id):
    return _get(db, "expenses", EXPENSE_COLUMNS, account_key, expense_id)


def create_expense(db, account_key, expense):
    return _insert(db, "expenses", EXPENSE_COLUMNS, account_key, expense)


def update_expense(db, account_key, expense_id, expense):
    _update(db, "expenses", EXPENSE_COLUMNS, account_key, expense_id, expense)


def delete_expense(db, account_key, expense_id):
    _delete(db, "expenses", account_key, expense_id)


def add_expense(db, account_key, candidate):
    """Store ``candidate``, merging it into a same-day, same-category expense.

    Read-then-write without a guard: two concurrent adds for the same key can
    both miss the match and create two rows.
    """
    account_key = require_account_key(account_key)
    if not candidate.get("date"):
        candidate = dict(candidate, date=date.today().isoformat())

    result = merge_or_insert_expense(list_expenses(db, account_key), candidate)
    expense = result["expense"]
    if result["action"] == "merge":
        update_expense(db, account_key, expense["id"], expense)
    else:
        expense["id"] = create_expense(db, account_key, expense)
    return result


def _investment_values(investment):
    values = dict(investment)
    values["return_value"] = compute_return_value(investment["current_value"], investment["investment_amount"])
    return values


def list_investments(db, account_key):
    return _list(db, "investments", INVESTMENT_COLUMNS, account_key)


def get_investment(db, account_key, investment_id):
    return _get(db, "investments", INVESTMENT_COLUMNS, account_key, investment_id)


def create_investment(db, account_key, investment):
    return _insert(db, "investments", INVESTMENT_COLUMNS, account_key, _investment_values(investment))


def update_investment(db, account_key, investment_id, investment):
    _update(db, "investments", INVESTMENT_COLUMNS, account_key, investment_id, _investment_values(investment))


def delete_investment(db, account_key, investment_id):
    _delete(db, "investments", account_key, investment_id)


# Option lists


def require_list_key(list_key):
    if list_key not in DEFAULT_OPTION_LISTS:
        raise UnknownListError(f"Unknown option list: {list_key}")
    return list_key


def get_category_list(db, account_key, list_key):
    account_key = require_account_key(account_key)
    row = db.execute(
        "SELECT items FROM option_lists WHERE account_key = ? AND list_key = ?",
        (account_key, require_list_key(list_key)),
    ).fetchone()
    if row is None:
        return None
    return normalize_option_list(json.loads(row["items"] or "[]"))


def put_category_list(db, account_key, list_key, items):
    account_key = require_account_key(account_key)
    normalized = normalize_option_list(items)
    db.execute(
        """
        INSERT INTO option_lists (account_key, list_key, items, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT (account_key, list_key) DO UPDATE SET items = excluded.items, updated_at = excluded.updated_at
        """,
        (account_key, require_list_key(list_key), json.dumps(normalized), _now_text()),
    )
    db.commit()
    return normalized


def list_category_lists(db, account_key):
    account_key = require_account_key(account_key)
    stored = {
        row["list_key"]: normalize_option_list(json.loads(row["items"] or "[]"))
        for row in db.execute(
            "SELECT list_key, items FROM option_lists WHERE account_key = ?", (account_key,)
        ).fetchall()
    }
    return {key: stored.get(key, list(defaults)) for key, defaults in DEFAULT_OPTION_LISTS.items()}


def ensure_default_lists(db, account_key):
    seeded = []
    for list_key, defaults in DEFAULT_OPTION_LISTS.items():
        if get_category_list(db, account_key, list_key) is None:
            put_category_list(db, account_key, list_key, defaults)
            seeded.append(list_key)
    return seeded


# Guarded loads


class LoadToken:
    """Marks a load as current; a cancelled load must not commit its results."""

    def __init__(self):
        self.active = True

    def cancel(self):
        self.active = False


def load_ledger(db, account_key, mode, state, token=None):
    """Read the records ``mode`` needs and copy them into ``state``.

    Returns False, leaving ``state`` untouched, when ``token`` was cancelled
    while the reads were in flight.
    """
    if mode not in LOAD_MODES:
        raise ValueError(f"Unknown load mode: {mode}")

    loaded = {}
    for kind in LOAD_MODES[mode]:
        loaded[kind] = list_expenses(db, account_key) if kind == "expenses" else list_investments(db, account_key)

    if token is not None and not token.active:
        logger.debug("Discarding superseded %s load for account_key=%s", mode, account_key)
        return False
    state.update(loaded)
    return True
