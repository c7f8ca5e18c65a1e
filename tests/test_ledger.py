from datetime import date

import pytest

from finance_tracker.ledger import (
    DEFAULT_OPTION_LISTS,
    ValidationError,
    add_option,
    aggregate,
    build_expense,
    build_investment,
    expense_chart_data,
    filter_records,
    group_totals,
    investment_chart_data,
    mark_used_for_calculation,
    merge_or_insert_expense,
    normalize_option_list,
    parse_entry_date,
    parse_money,
    remove_option,
    resolve_filters,
    select_latest_investments,
    total_assets_rows,
)


def expense(id=None, date="2024-01-01", amount=10.0, remark="", bank="A", card="X", kind="Food"):
    return {
        "id": id,
        "date": date,
        "amount": amount,
        "remark": remark,
        "bank_type": bank,
        "card_type": card,
        "expense_type": kind,
    }


def investment(id=None, date="2024-01-01", mode="SIP", kind="MF", current=100.0, amount=90.0):
    return {
        "id": id,
        "date": date,
        "investment_mode": mode,
        "investment_type": kind,
        "current_value": current,
        "investment_amount": amount,
        "return_value": current - amount,
    }


def test_parse_money_accepts_currency_text_and_rejects_non_finite():
    assert parse_money("1,234.50") == 1234.5
    assert parse_money("$12") == 12.0
    assert parse_money("(5.25)") == -5.25
    assert parse_money(-3) == -3.0
    assert parse_money("abc") is None
    assert parse_money("nan") is None
    assert parse_money("inf") is None
    assert parse_money("") is None
    assert parse_money(None) is None
    assert parse_money(True) is None


def test_parse_entry_date_treats_malformed_values_as_missing():
    assert parse_entry_date("2024-02-29") == date(2024, 2, 29)
    assert parse_entry_date("2024-02-30") is None
    assert parse_entry_date("yesterday") is None
    assert parse_entry_date(None) is None


def test_build_expense_validates_and_keeps_negative_amounts():
    record = build_expense(
        {"date": "2024-01-01", "amount": "-12.5", "remark": " refund ", "bank_type": "A", "card_type": "X", "expense_type": "Food"}
    )
    assert record == expense(amount=-12.5, remark="refund")

    with pytest.raises(ValidationError):
        build_expense({"date": "2024-01-01", "amount": "twelve", "bank_type": "A", "card_type": "X", "expense_type": "Food"})
    with pytest.raises(ValidationError):
        build_expense({"date": "2024-01-01", "amount": "1", "bank_type": "", "card_type": "X", "expense_type": "Food"})


def test_build_expense_defaults_missing_date():
    record = build_expense(
        {"amount": "3", "bank_type": "A", "card_type": "X", "expense_type": "Food"},
        default_date=date(2024, 5, 6),
    )
    assert record["date"] == "2024-05-06"


@pytest.mark.parametrize(
    "current, invested, expected",
    [(120.0, 90.0, 30.0), (50.0, 90.0, -40.0), (-10.0, 5.0, -15.0), (0.0, 0.0, 0.0)],
)
def test_build_investment_recomputes_return_value(current, invested, expected):
    record = build_investment(
        {
            "date": "2024-01-01",
            "investment_mode": "SIP",
            "investment_type": "MF",
            "current_value": current,
            "investment_amount": invested,
            "return_value": 999,
        }
    )
    assert record["return_value"] == expected


def test_filter_defaults_to_today_and_ignores_range():
    today = date(2024, 3, 10)
    records = [expense(id=1, date="2024-03-10"), expense(id=2, date="2024-03-09"), expense(id=3, date="2024-03-10", kind="Travel")]
    predicates = {"show_all": False, "from_date": date(2024, 1, 1), "to_date": date(2024, 1, 31), "fields": {}}

    result = filter_records(records, predicates, today=today)

    assert [row["id"] for row in result] == [1, 3]


def test_filter_show_all_applies_range_and_categories_sorted_desc():
    records = [
        expense(id=1, date="2024-01-05"),
        expense(id=2, date="2024-02-10"),
        expense(id=3, date="2024-03-01"),
        expense(id=4, date="2024-02-20", bank="B"),
    ]
    predicates = {
        "show_all": True,
        "from_date": date(2024, 2, 1),
        "to_date": date(2024, 3, 31),
        "fields": {"bank_type": "A"},
    }

    result = filter_records(records, predicates)

    assert [row["id"] for row in result] == [3, 2]


def test_filter_is_idempotent_and_does_not_mutate_input():
    records = [expense(id=1, date="2024-01-05"), expense(id=2, date="2024-02-10")]
    snapshot = [dict(row) for row in records]
    predicates = {"show_all": True, "fields": {}}

    first = filter_records(records, predicates)
    second = filter_records(records, predicates)

    assert first == second
    assert records == snapshot
    first[0]["amount"] = 0
    assert records == snapshot


def test_resolve_filters_drops_malformed_dates_and_swaps_reversed_range():
    predicates = resolve_filters({"show_all": "true", "from": "2024-03-01", "to": "2024-01-01", "bank_type": " A "}, ("bank_type", "card_type"))
    assert predicates == {
        "show_all": True,
        "from_date": date(2024, 1, 1),
        "to_date": date(2024, 3, 1),
        "fields": {"bank_type": "A"},
    }

    predicates = resolve_filters({"from": "not-a-date"}, ("bank_type",))
    assert predicates["show_all"] is False
    assert predicates["from_date"] is None
    assert predicates["fields"] == {}


def test_merge_sums_amounts_and_appends_remark():
    existing = [expense(id=7, amount=10, remark="tea")]
    candidate = expense(amount=5)

    result = merge_or_insert_expense(existing, candidate)

    assert result["action"] == "merge"
    assert result["expense"]["id"] == 7
    assert result["expense"]["amount"] == 15
    assert result["expense"]["remark"] == "tea, 5.00"
    assert len(result["expenses"]) == 1
    assert existing[0]["amount"] == 10


def test_merge_with_empty_remark_uses_formatted_amount():
    result = merge_or_insert_expense([expense(id=1, amount=2, remark="")], expense(amount=3.456))
    assert result["expense"]["remark"] == "3.46"


def test_insert_prepends_when_any_key_field_differs():
    existing = [expense(id=1), expense(id=2, date="2024-01-02")]
    candidate = expense(card="Y", amount=4, remark="bus")

    result = merge_or_insert_expense(existing, candidate)

    assert result["action"] == "insert"
    assert len(result["expenses"]) == 3
    assert result["expenses"][0] == candidate
    assert result["expense"] == candidate


def test_merge_matching_is_exact_string():
    result = merge_or_insert_expense([expense(id=1, kind="Food")], expense(kind="food "))
    assert result["action"] == "insert"


def test_select_latest_respects_cutoff():
    records = [
        investment(id=1, date="2024-01-01", current=100, amount=90),
        investment(id=2, date="2024-02-01", current=120, amount=90),
    ]

    selected = select_latest_investments(records, "2024-01-15")

    assert [row["id"] for row in selected] == [1]
    assert selected[0]["used_for_calculation"] is True


def test_select_latest_one_per_pair_with_max_date():
    records = [
        investment(id=1, date="2024-01-01"),
        investment(id=2, date="2024-03-01"),
        investment(id=3, date="2024-02-01"),
        investment(id=4, date="2024-01-10", mode="Lump Sum"),
        investment(id=5, date="2024-02-15", kind="Gold"),
    ]

    selected = select_latest_investments(records, date(2024, 12, 31))

    assert [row["id"] for row in selected] == [2, 4, 5]
    keys = [(row["investment_mode"], row["investment_type"]) for row in selected]
    assert len(keys) == len(set(keys))


def test_select_latest_tie_keeps_first_seen():
    records = [investment(id=1, date="2024-01-01", current=10), investment(id=2, date="2024-01-01", current=20)]
    assert [row["id"] for row in select_latest_investments(records, "2024-01-01")] == [1]
    assert [row["id"] for row in select_latest_investments(list(reversed(records)), "2024-01-01")] == [2]


def test_mark_used_for_calculation_keeps_history_visible():
    records = [investment(id=1, date="2024-01-01"), investment(id=2, date="2024-02-01")]
    marked = mark_used_for_calculation(records, select_latest_investments(records, "2024-12-31"))

    assert [(row["id"], row["used_for_calculation"]) for row in marked] == [(1, False), (2, True)]


def test_mark_used_for_calculation_matches_unsaved_records():
    records = [investment(date="2024-01-01"), investment(date="2024-02-01", current=130)]
    marked = mark_used_for_calculation(records, select_latest_investments(records, "2024-12-31"))

    assert [row["used_for_calculation"] for row in marked] == [False, True]


def test_aggregate_totals_net_worth_and_roi():
    expenses = [expense(id=1, date="2024-01-02", amount=40), expense(id=2, date="2024-03-01", amount=1000)]
    investments = [
        investment(id=1, date="2024-01-01", current=100, amount=90),
        investment(id=2, date="2024-01-20", current=150, amount=100),
        investment(id=3, date="2024-01-05", mode="Lump Sum", kind="Stocks", current=250, amount=200),
    ]

    totals = aggregate(expenses, investments, "2024-01-31")

    assert totals["expense_count"] == 1
    assert totals["total_expense_amount"] == 40
    assert totals["unique_investment_count"] == 2
    assert totals["total_investment_amount"] == 300
    assert totals["total_current_value"] == 400
    assert totals["total_return_value"] == 100
    assert totals["net_worth"] == 360
    assert totals["roi_percent"] == 33.33
    assert totals["cutoff_date"] == "2024-01-31"


def test_aggregate_roi_is_zero_without_investment():
    totals = aggregate([expense(amount=5)], [], "2024-01-31")
    assert totals["roi_percent"] == 0
    assert totals["total_investment_amount"] == 0
    assert totals["net_worth"] == -5


def test_total_assets_rows_lists_expenses_then_latest_investments():
    rows = total_assets_rows(
        [expense(id=1, date="2024-01-01"), expense(id=2, date="2024-05-01")],
        [investment(id=3, date="2024-01-01"), investment(id=4, date="2024-01-03")],
        "2024-02-01",
    )
    assert [(row["kind"], row["record"]["id"]) for row in rows] == [("expense", 1), ("investment", 4)]
    assert all(row["used_for_calculation"] for row in rows)


def test_group_totals_orders_by_first_appearance_and_labels_unknown():
    groups = group_totals(
        [expense(amount=30, bank="B"), expense(amount=10, bank=""), expense(amount=60, bank="B")],
        "bank_type",
        "amount",
    )
    assert groups == [
        {"name": "B", "value": 90.0, "share": 90.0},
        {"name": "Unknown", "value": 10.0, "share": 10.0},
    ]
    assert group_totals([], "bank_type", "amount") == []


def test_chart_data_shapes():
    assert set(expense_chart_data([expense()])) == {"bank_type", "card_type", "expense_type"}
    charts = investment_chart_data([investment(current=100, amount=90), investment(kind="Gold", current=50, amount=40)])
    assert charts["invested_amount_by_type"] == [
        {"name": "MF", "value": 90.0, "share": 69.2},
        {"name": "Gold", "value": 40.0, "share": 30.8},
    ]


def test_option_list_helpers_are_case_insensitive():
    assert normalize_option_list([" Food ", "food", "", "Travel", None]) == ["Food", "Travel"]
    assert add_option(["Food"], "FOOD") == ["Food"]
    assert add_option(["Food"], " Rent ") == ["Food", "Rent"]
    assert remove_option(["Food", "Rent"], "Rent") == ["Food"]
    assert set(DEFAULT_OPTION_LISTS) == {"bankType", "cardType", "expenseType", "investmentMode", "investmentType"}
