"""Derived-data rules over expense and investment records.

Records are plain dicts shaped like store rows. Nothing here touches the
database or mutates its inputs; every function returns new lists and dicts.
"""

import math
from datetime import date, datetime


EXPENSE_FIELDS = ("bank_type", "card_type", "expense_type")
INVESTMENT_FIELDS = ("investment_mode", "investment_type")
MERGE_KEY_FIELDS = ("date",) + EXPENSE_FIELDS

DEFAULT_OPTION_LISTS = {
    "bankType": ["Checking", "Savings", "Credit Union", "Digital Wallet"],
    "cardType": ["Debit", "Credit", "Prepaid", "Virtual"],
    "expenseType": ["Food", "Transport", "Bills", "Entertainment", "Shopping", "Travel", "Health", "Other"],
    "investmentMode": ["SIP", "Lump Sum", "Systematic Transfer", "Dividend Reinvestment"],
    "investmentType": [
        "Mutual Fund",
        "Stocks",
        "Bonds",
        "ETF",
        "Fixed Deposit",
        "PPF",
        "Gold",
        "Real Estate",
        "Cryptocurrency",
    ],
}
TRUTHY_FLAGS = {"1", "true", "yes", "on"}
UNKNOWN_LABEL = "Unknown"


class ValidationError(ValueError):
    """Raised when user input cannot become a ledger record."""


def parse_money(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "").replace("₹", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_entry_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = (value or "").strip() if isinstance(value, str) else ""
    if not cleaned:
        return None
    try:
        return datetime.strptime(cleaned[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def format_amount(value):
    return f"{value:.2f}"


def _required_label(payload, field):
    label = payload.get(field)
    label = label.strip() if isinstance(label, str) else ""
    if not label:
        raise ValidationError(f"{field} is required.")
    return label


def _required_date(payload, default_date=None):
    raw = payload.get("date")
    if raw in (None, "") and default_date is not None:
        return default_date.isoformat()
    parsed = parse_entry_date(raw)
    if parsed is None:
        raise ValidationError("date must be a valid YYYY-MM-DD date.")
    return parsed.isoformat()


def _required_number(payload, field):
    number = parse_money(payload.get(field))
    if number is None:
        raise ValidationError(f"{field} must be a valid number.")
    return number


def build_expense(payload, default_date=None):
    """Validate raw input and return an unsaved expense record."""
    remark = payload.get("remark")
    return {
        "id": payload.get("id"),
        "date": _required_date(payload, default_date),
        "amount": _required_number(payload, "amount"),
        "remark": remark.strip() if isinstance(remark, str) else "",
        "bank_type": _required_label(payload, "bank_type"),
        "card_type": _required_label(payload, "card_type"),
        "expense_type": _required_label(payload, "expense_type"),
    }


def compute_return_value(current_value, investment_amount):
    return current_value - investment_amount


def build_investment(payload, default_date=None):
    """Validate raw input and return an unsaved investment record.

    Any ``return_value`` in the payload is ignored; it is always derived from
    the current value and the invested amount.
    """
    current_value = _required_number(payload, "current_value")
    investment_amount = _required_number(payload, "investment_amount")
    return {
        "id": payload.get("id"),
        "date": _required_date(payload, default_date),
        "investment_mode": _required_label(payload, "investment_mode"),
        "investment_type": _required_label(payload, "investment_type"),
        "current_value": current_value,
        "investment_amount": investment_amount,
        "return_value": compute_return_value(current_value, investment_amount),
    }


# Filter engine


def resolve_filters(args, field_names):
    """Turn request parameters into a predicate dict for ``filter_records``."""
    show_all = str(args.get("show_all") or "").strip().lower() in TRUTHY_FLAGS
    from_date = parse_entry_date(args.get("from"))
    to_date = parse_entry_date(args.get("to"))
    if from_date and to_date and from_date > to_date:
        from_date, to_date = to_date, from_date

    fields = {}
    for name in field_names:
        value = (args.get(name) or "").strip()
        if value:
            fields[name] = value

    return {"show_all": show_all, "from_date": from_date, "to_date": to_date, "fields": fields}


def _sort_key(record):
    parsed = parse_entry_date(record.get("date"))
    return parsed.toordinal() if parsed else 0


def filter_records(records, predicates=None, today=None):
    predicates = predicates or {}
    today = today or date.today()
    show_all = predicates.get("show_all", False)
    from_date = predicates.get("from_date")
    to_date = predicates.get("to_date")
    fields = predicates.get("fields") or {}

    selected = []
    for record in records:
        record_date = parse_entry_date(record.get("date"))
        if show_all:
            if from_date and record_date and record_date < from_date:
                continue
            if to_date and record_date and record_date > to_date:
                continue
        elif record_date != today:
            continue
        if any(value and record.get(field) != value for field, value in fields.items()):
            continue
        selected.append(dict(record))

    return sorted(selected, key=_sort_key, reverse=True)


# Dedup/merge rule


def merge_key(record):
    return tuple(record.get(field) for field in MERGE_KEY_FIELDS)


def merge_or_insert_expense(existing, candidate):
    """Fold ``candidate`` into a same-day, same-category expense or prepend it.

    Returns ``{"action": "merge" | "insert", "expense": record, "expenses": list}``.
    """
    key = merge_key(candidate)
    for position, current in enumerate(existing):
        if merge_key(current) != key:
            continue
        added = format_amount(candidate["amount"])
        merged = dict(current)
        merged["amount"] = current["amount"] + candidate["amount"]
        merged["remark"] = f"{current['remark']}, {added}" if current.get("remark") else added
        expenses = [dict(row) for row in existing]
        expenses[position] = merged
        return {"action": "merge", "expense": merged, "expenses": expenses}

    inserted = dict(candidate)
    inserted.setdefault("id", None)
    return {"action": "insert", "expense": inserted, "expenses": [inserted] + [dict(row) for row in existing]}


# Latest selector


def _on_or_before(record, cutoff):
    record_date = parse_entry_date(record.get("date"))
    return record_date is not None and record_date <= cutoff


def _resolve_cutoff(cutoff_date):
    if cutoff_date is None:
        return date.today()
    parsed = parse_entry_date(cutoff_date)
    return parsed or date.today()


def select_latest_investments(records, cutoff_date=None):
    """Latest valuation per (mode, type) pair at or before the cutoff.

    On equal dates the record seen first in ``records`` is kept.
    """
    cutoff = _resolve_cutoff(cutoff_date)
    latest = {}
    for record in records:
        if not _on_or_before(record, cutoff):
            continue
        key = (record.get("investment_mode"), record.get("investment_type"))
        held = latest.get(key)
        if held is None or parse_entry_date(record["date"]) > parse_entry_date(held["date"]):
            latest[key] = record
    return [dict(record, used_for_calculation=True) for record in latest.values()]


def mark_used_for_calculation(records, selected):
    selected_ids = {record["id"] for record in selected if record.get("id") is not None}
    # unsaved records have no id, so compare their fields instead
    unsaved = [
        {key: value for key, value in record.items() if key != "used_for_calculation"}
        for record in selected
        if record.get("id") is None
    ]
    marked = []
    for record in records:
        record_id = record.get("id")
        if record_id is not None:
            used = record_id in selected_ids
        else:
            plain = {key: value for key, value in record.items() if key != "used_for_calculation"}
            used = plain in unsaved
        marked.append(dict(record, used_for_calculation=used))
    return marked


# Aggregator


def roi_percent(total_return_value, total_investment_amount):
    if total_investment_amount > 0:
        return round(total_return_value / total_investment_amount * 100, 2)
    return 0.0


def aggregate(expenses, investments, cutoff_date=None):
    cutoff = _resolve_cutoff(cutoff_date)
    counted_expenses = [record for record in expenses if _on_or_before(record, cutoff)]
    latest = select_latest_investments(investments, cutoff)

    total_expense_amount = sum(record["amount"] for record in counted_expenses)
    total_investment_amount = sum(record["investment_amount"] for record in latest)
    total_current_value = sum(record["current_value"] for record in latest)
    total_return_value = sum(record["return_value"] for record in latest)

    return {
        "cutoff_date": cutoff.isoformat(),
        "expense_count": len(counted_expenses),
        "unique_investment_count": len(latest),
        "total_expense_amount": total_expense_amount,
        "total_investment_amount": total_investment_amount,
        "total_current_value": total_current_value,
        "total_return_value": total_return_value,
        "net_worth": total_current_value - total_expense_amount,
        "roi_percent": roi_percent(total_return_value, total_investment_amount),
    }


def total_assets_rows(expenses, investments, cutoff_date=None):
    cutoff = _resolve_cutoff(cutoff_date)
    rows = [
        {"kind": "expense", "used_for_calculation": True, "record": dict(record)}
        for record in expenses
        if _on_or_before(record, cutoff)
    ]
    rows.extend(
        {"kind": "investment", "used_for_calculation": True, "record": record}
        for record in select_latest_investments(investments, cutoff)
    )
    return rows


def group_totals(records, field, value_field):
    groups = {}
    for record in records:
        label = record.get(field) or UNKNOWN_LABEL
        groups[label] = groups.get(label, 0.0) + record[value_field]

    grand_total = sum(groups.values())
    return [
        {
            "name": label,
            "value": value,
            "share": round(value / grand_total * 100, 1) if grand_total else 0.0,
        }
        for label, value in groups.items()
    ]


def expense_chart_data(expenses):
    return {
        "bank_type": group_totals(expenses, "bank_type", "amount"),
        "card_type": group_totals(expenses, "card_type", "amount"),
        "expense_type": group_totals(expenses, "expense_type", "amount"),
    }


def investment_chart_data(investments):
    return {
        "current_value_by_mode": group_totals(investments, "investment_mode", "current_value"),
        "current_value_by_type": group_totals(investments, "investment_type", "current_value"),
        "invested_amount_by_type": group_totals(investments, "investment_type", "investment_amount"),
    }


# Category vocabulary


def normalize_option_list(items):
    seen = set()
    normalized = []
    for item in items or []:
        label = item.strip() if isinstance(item, str) else ""
        if not label or label.lower() in seen:
            continue
        seen.add(label.lower())
        normalized.append(label)
    return normalized


def add_option(items, value):
    label = (value or "").strip()
    if not label or any(item.lower() == label.lower() for item in items):
        return list(items)
    return list(items) + [label]


def remove_option(items, value):
    return [item for item in items if item != value]
