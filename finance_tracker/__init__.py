import csv
import io
import os
import uuid
from datetime import date, datetime
from functools import wraps

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .db import connect_db, database_errors, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .ledger import (
    DEFAULT_OPTION_LISTS,
    EXPENSE_FIELDS,
    INVESTMENT_FIELDS,
    ValidationError,
    add_option,
    aggregate,
    build_expense,
    build_investment,
    expense_chart_data,
    filter_records,
    investment_chart_data,
    mark_used_for_calculation,
    parse_entry_date,
    remove_option,
    resolve_filters,
    select_latest_investments,
    total_assets_rows,
)
from .store import (
    MissingAccountKeyError,
    RecordNotFoundError,
    UnknownListError,
    add_expense,
    create_investment,
    delete_expense,
    delete_investment,
    ensure_default_lists,
    get_category_list,
    get_expense,
    get_investment,
    list_category_lists,
    list_expenses,
    list_investments,
    load_ledger,
    put_category_list,
    require_list_key,
    update_expense,
    update_investment,
)


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be migrated."""


class StoreUnavailableError(RuntimeError):
    """Raised when a request cannot open its database connection."""


EXPENSE_CSV_COLUMNS = ["date", "amount", "remark", "bank_type", "card_type", "expense_type"]
INVESTMENT_CSV_COLUMNS = [
    "date",
    "investment_mode",
    "investment_type",
    "current_value",
    "investment_amount",
    "return_value",
]
DB_RECOVERY_ENDPOINTS = {"init_db_route", "db_health"}


def request_payload():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def totals_view_args(args):
    """Totals, charts and exports work over every record unless told otherwise."""
    values = args.to_dict()
    values.setdefault("show_all", "1")
    return values


def describe_filters(predicates):
    return {
        "show_all": predicates["show_all"],
        "from": predicates["from_date"].isoformat() if predicates["from_date"] else None,
        "to": predicates["to_date"].isoformat() if predicates["to_date"] else None,
        "fields": dict(predicates["fields"]),
    }


def resolve_cutoff(args):
    return parse_entry_date(args.get("cutoff")) or date.today()


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        DATABASE_URL=None,
        SEED_DEFAULT_LISTS=True,
    )
    app.config.from_prefixed_env("FINANCE_TRACKER")

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def db_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL"))

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(db_config())
            except (*database_errors(), OSError, RuntimeError) as exc:
                message = f"Unable to open database {db_config()['database_name']}: {exc}"
                print(f"[DB ERROR] {message}")
                raise StoreUnavailableError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(db_config())
            app.config["DB_INIT_ERROR"] = None
        except (*database_errors(), OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {db_config()['database_name']}: {exc}"
            print(f"[DB INIT ERROR] {message}")
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.route("/init-db")
    def init_db_route():
        init_db()
        return jsonify({"ok": True, "message": "Database initialized."})

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(db_config()))
        except database_errors() as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(MissingAccountKeyError)
    def handle_missing_account_key(exc):
        app.logger.warning("Rejected %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": str(exc)}), 401

    @app.errorhandler(RecordNotFoundError)
    @app.errorhandler(UnknownListError)
    def handle_not_found(exc):
        return jsonify({"error": str(exc)}), 404

    def handle_store_error(exc):
        app.logger.exception("Store failure on %s %s", request.method, request.path)
        return jsonify({"error": f"Record store unavailable: {exc}"}), 503

    for error_class in (*database_errors(), StoreUnavailableError):
        app.register_error_handler(error_class, handle_store_error)

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return jsonify({"error": str(exc)}), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required."}), 401
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR") and request.endpoint not in DB_RECOVERY_ENDPOINTS:
            message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
            return jsonify({"error": message}), 500

        user_id = session.get("user_id")
        g.user = None
        g.account_key = None
        if user_id is not None:
            g.user = get_db().execute(
                "SELECT id, login_id, name, email, account_key FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if g.user is not None:
                g.account_key = g.user["account_key"]

    def public_user(user):
        return {
            "id": user["id"],
            "login_id": user["login_id"],
            "name": user["name"],
            "email": user["email"],
            "account_key": user["account_key"],
        }

    # Accounts

    @app.post("/register")
    def register():
        payload = request_payload()
        login_id = (payload.get("login_id") or "").strip()
        password = payload.get("password") or ""
        name = (payload.get("name") or "").strip()
        email = (payload.get("email") or "").strip() or None

        error = None
        if not login_id:
            error = "Login ID is required."
        elif not password:
            error = "Password is required."
        elif not name:
            error = "Name is required."
        if error is not None:
            return jsonify({"error": error}), 400

        db = get_db()
        existing = db.execute("SELECT id FROM users WHERE login_id = ?", (login_id,)).fetchone()
        if existing is not None:
            return jsonify({"error": "User with this login ID already exists."}), 409

        account_key = uuid.uuid4().hex
        db.execute(
            """
            INSERT INTO users (login_id, name, email, password_hash, account_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                login_id,
                name,
                email,
                generate_password_hash(password),
                account_key,
                datetime.utcnow().isoformat(timespec="seconds"),
            ),
        )
        user_id = db.last_insert_id()
        db.commit()
        if app.config["SEED_DEFAULT_LISTS"]:
            ensure_default_lists(db, account_key)
        app.logger.info("Registered user_id=%s login_id=%s", user_id, login_id)

        user = db.execute(
            "SELECT id, login_id, name, email, account_key FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return jsonify({"message": "Registration successful.", "user": public_user(user)}), 201

    @app.post("/login")
    def login():
        payload = request_payload()
        login_id = (payload.get("login_id") or "").strip()
        password = payload.get("password") or ""
        db = get_db()
        user = db.execute("SELECT * FROM users WHERE login_id = ?", (login_id,)).fetchone()

        if user is None or not check_password_hash(user["password_hash"], password):
            app.logger.info("Failed login for login_id=%s", login_id)
            return jsonify({"error": "Incorrect login ID or password."}), 401

        session.clear()
        session["user_id"] = user["id"]
        if app.config["SEED_DEFAULT_LISTS"]:
            ensure_default_lists(db, user["account_key"])
        return jsonify({"message": "Logged in.", "user": public_user(user)})

    @app.post("/logout")
    def logout():
        session.clear()
        return jsonify({"message": "Logged out."})

    @app.get("/me")
    @login_required
    def me():
        return jsonify({"user": public_user(g.user)})

    # Expenses

    @app.get("/expenses")
    @login_required
    def expenses_index():
        predicates = resolve_filters(request.args, EXPENSE_FIELDS)
        expenses = filter_records(list_expenses(get_db(), g.account_key), predicates)
        for expense in expenses:
            expense["is_negative"] = expense["amount"] < 0
        return jsonify({
            "expenses": expenses,
            "count": len(expenses),
            "total": round(sum(expense["amount"] for expense in expenses), 2),
            "filters": describe_filters(predicates),
        })

    @app.post("/expenses")
    @login_required
    def create_expense_route():
        candidate = build_expense(request_payload(), default_date=date.today())
        result = add_expense(get_db(), g.account_key, candidate)
        expense = result["expense"]
        if result["action"] == "merge":
            app.logger.info("Merged expense into id=%s account_key=%s", expense["id"], g.account_key)
            return jsonify({"action": "merge", "expense": expense})

        app.logger.info("Created expense id=%s account_key=%s", expense["id"], g.account_key)
        return jsonify({"action": "insert", "expense": expense}), 201

    @app.get("/expenses/<int:expense_id>")
    @login_required
    def expense_detail(expense_id):
        return jsonify({"expense": get_expense(get_db(), g.account_key, expense_id)})

    @app.put("/expenses/<int:expense_id>")
    @login_required
    def edit_expense(expense_id):
        db = get_db()
        get_expense(db, g.account_key, expense_id)
        updated = build_expense(request_payload())
        update_expense(db, g.account_key, expense_id, updated)
        updated["id"] = expense_id
        app.logger.info("Updated expense id=%s account_key=%s", expense_id, g.account_key)
        return jsonify({"expense": updated})

    @app.delete("/expenses/<int:expense_id>")
    @login_required
    def delete_expense_route(expense_id):
        delete_expense(get_db(), g.account_key, expense_id)
        app.logger.info("Deleted expense id=%s account_key=%s", expense_id, g.account_key)
        return jsonify({"deleted": expense_id})

    # Investments

    @app.get("/investments")
    @login_required
    def investments_index():
        predicates = resolve_filters(request.args, INVESTMENT_FIELDS)
        cutoff = resolve_cutoff(request.args)
        investments = filter_records(list_investments(get_db(), g.account_key), predicates)
        latest = select_latest_investments(investments, cutoff)
        return jsonify({
            "investments": mark_used_for_calculation(investments, latest),
            "count": len(investments),
            "cutoff_date": cutoff.isoformat(),
            "filters": describe_filters(predicates),
        })

    @app.post("/investments")
    @login_required
    def create_investment_route():
        investment = build_investment(request_payload(), default_date=date.today())
        investment["id"] = create_investment(get_db(), g.account_key, investment)
        app.logger.info("Created investment id=%s account_key=%s", investment["id"], g.account_key)
        return jsonify({"investment": investment}), 201

    @app.get("/investments/<int:investment_id>")
    @login_required
    def investment_detail(investment_id):
        return jsonify({"investment": get_investment(get_db(), g.account_key, investment_id)})

    @app.put("/investments/<int:investment_id>")
    @login_required
    def edit_investment(investment_id):
        db = get_db()
        get_investment(db, g.account_key, investment_id)
        updated = build_investment(request_payload())
        update_investment(db, g.account_key, investment_id, updated)
        updated["id"] = investment_id
        app.logger.info("Updated investment id=%s account_key=%s", investment_id, g.account_key)
        return jsonify({"investment": updated})

    @app.delete("/investments/<int:investment_id>")
    @login_required
    def delete_investment_route(investment_id):
        delete_investment(get_db(), g.account_key, investment_id)
        app.logger.info("Deleted investment id=%s account_key=%s", investment_id, g.account_key)
        return jsonify({"deleted": investment_id})

    # Totals and charts

    @app.get("/summary")
    @login_required
    def summary():
        args = totals_view_args(request.args)
        cutoff = resolve_cutoff(args)
        state = {}
        load_ledger(get_db(), g.account_key, "total_assets", state)

        expense_filters = resolve_filters(args, EXPENSE_FIELDS)
        investment_filters = resolve_filters(args, INVESTMENT_FIELDS)
        expenses = filter_records(state["expenses"], expense_filters)
        investments = filter_records(state["investments"], investment_filters)
        return jsonify({
            "totals": aggregate(expenses, investments, cutoff),
            "rows": total_assets_rows(expenses, investments, cutoff),
        })

    @app.get("/charts/expenses")
    @login_required
    def expense_charts():
        all_expenses = list_expenses(get_db(), g.account_key)
        expenses = filter_records(all_expenses, resolve_filters(totals_view_args(request.args), EXPENSE_FIELDS))
        return jsonify({
            "charts": expense_chart_data(expenses),
            "total": sum(expense["amount"] for expense in expenses),
            "all_total": sum(expense["amount"] for expense in all_expenses),
            "is_filtered": len(all_expenses) > len(expenses),
        })

    @app.get("/charts/investments")
    @login_required
    def investment_charts():
        all_investments = list_investments(get_db(), g.account_key)
        investments = filter_records(
            all_investments, resolve_filters(totals_view_args(request.args), INVESTMENT_FIELDS)
        )
        return jsonify({
            "charts": investment_chart_data(investments),
            "total_current_value": sum(item["current_value"] for item in investments),
            "total_investment_amount": sum(item["investment_amount"] for item in investments),
            "all_total_current_value": sum(item["current_value"] for item in all_investments),
            "all_total_investment_amount": sum(item["investment_amount"] for item in all_investments),
            "is_filtered": len(all_investments) > len(investments),
        })

    # Category vocabularies

    def current_list(list_key):
        items = get_category_list(get_db(), g.account_key, list_key)
        return items if items is not None else list(DEFAULT_OPTION_LISTS[list_key])

    @app.get("/lists")
    @login_required
    def lists_index():
        return jsonify({"lists": list_category_lists(get_db(), g.account_key)})

    @app.get("/lists/<list_key>")
    @login_required
    def list_detail(list_key):
        require_list_key(list_key)
        return jsonify({"key": list_key, "items": current_list(list_key)})

    @app.put("/lists/<list_key>")
    @login_required
    def replace_list(list_key):
        require_list_key(list_key)
        items = request_payload().get("items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list of labels.")
        saved = put_category_list(get_db(), g.account_key, list_key, items)
        return jsonify({"key": list_key, "items": saved})

    @app.post("/lists/<list_key>")
    @login_required
    def add_list_option(list_key):
        require_list_key(list_key)
        value = request_payload().get("value")
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("value is required.")
        saved = put_category_list(get_db(), g.account_key, list_key, add_option(current_list(list_key), value))
        return jsonify({"key": list_key, "items": saved})

    @app.delete("/lists/<list_key>/<path:value>")
    @login_required
    def remove_list_option(list_key, value):
        require_list_key(list_key)
        saved = put_category_list(get_db(), g.account_key, list_key, remove_option(current_list(list_key), value))
        return jsonify({"key": list_key, "items": saved})

    # Export

    @app.route("/export/csv")
    @login_required
    def export_csv():
        kind = (request.args.get("kind") or "expenses").strip()
        if kind not in {"expenses", "investments"}:
            raise ValidationError("kind must be expenses or investments.")

        args = totals_view_args(request.args)
        if kind == "expenses":
            columns = EXPENSE_CSV_COLUMNS
            records = filter_records(list_expenses(get_db(), g.account_key), resolve_filters(args, EXPENSE_FIELDS))
        else:
            columns = INVESTMENT_CSV_COLUMNS
            records = filter_records(
                list_investments(get_db(), g.account_key), resolve_filters(args, INVESTMENT_FIELDS)
            )

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(columns)
        for record in sorted(records, key=lambda item: item["date"]):
            writer.writerow([record[column] for column in columns])

        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={
                "Content-Disposition": (
                    f"attachment; filename={kind}-{args.get('from') or 'all'}-{args.get('to') or 'all'}.csv"
                )
            },
        )

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
