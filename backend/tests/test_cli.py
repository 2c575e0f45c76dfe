"""CLI bootstrap tests (flask system / users / products)."""

from pharmapos.extensions import db
from pharmapos.models import Product, User


def test_system_init_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "init"])
    assert result.exit_code == 0
    assert db.session.query(User).count() == 3

    result = runner.invoke(args=["system", "init"])
    assert result.exit_code == 0
    assert "already exists" in result.output
    assert db.session.query(User).count() == 3


def test_products_seed_and_alerts(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["products", "seed"])
    assert result.exit_code == 0
    assert db.session.query(Product).count() == 5

    # Second run skips existing barcodes
    runner.invoke(args=["products", "seed"])
    assert db.session.query(Product).count() == 5

    result = runner.invoke(args=["products", "alerts", "--days", "60"])
    assert result.exit_code == 0
    assert "Amoxicillin 500mg" in result.output
    assert "Cough Syrup" in result.output


def test_users_create_rejects_weak_password(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        "users", "create",
        "--email", "weak@pharmapos.test",
        "--full-name", "Weak",
        "--password", "weak",
        "--role", "cashier",
    ])
    assert result.exit_code == 1
    assert "FAIL" in result.output
    assert db.session.query(User).count() == 0
