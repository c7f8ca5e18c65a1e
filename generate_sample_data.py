import random
import uuid
from datetime import date, datetime, timedelta

from werkzeug.security import generate_password_hash

from finance_tracker import create_app
from finance_tracker.ledger import DEFAULT_OPTION_LISTS, build_expense, build_investment
from finance_tracker.store import add_expense, create_investment, ensure_default_lists


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        account_key = uuid.uuid4().hex
        db.execute(
            "INSERT INTO users (login_id, name, password_hash, account_key, created_at) VALUES (?, ?, ?, ?, ?)",
            ("demo", "Demo User", generate_password_hash("demo123"), account_key, datetime.utcnow().isoformat(timespec="seconds")),
        )
        db.commit()
        ensure_default_lists(db, account_key)

        start = date.today() - timedelta(days=90)
        for i in range(40):
            add_expense(
                db,
                account_key,
                build_expense({
                    "date": (start + timedelta(days=i * 2)).isoformat(),
                    "amount": round(random.uniform(5, 200), 2),
                    "remark": f"Sample expense {i + 1}",
                    "bank_type": random.choice(DEFAULT_OPTION_LISTS["bankType"]),
                    "card_type": random.choice(DEFAULT_OPTION_LISTS["cardType"]),
                    "expense_type": random.choice(DEFAULT_OPTION_LISTS["expenseType"]),
                }),
            )

        # monthly snapshots so the latest-per-pair selection has history to pick from
        holdings = [("SIP", "Mutual Fund"), ("Lump Sum", "Stocks"), ("Lump Sum", "Gold")]
        for mode, kind in holdings:
            invested = round(random.uniform(1000, 5000), 2)
            for month in range(3):
                invested += round(random.uniform(0, 500), 2)
                create_investment(
                    db,
                    account_key,
                    build_investment({
                        "date": (start + timedelta(days=month * 30)).isoformat(),
                        "investment_mode": mode,
                        "investment_type": kind,
                        "investment_amount": round(invested, 2),
                        "current_value": round(invested * random.uniform(0.9, 1.2), 2),
                    }),
                )

    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
