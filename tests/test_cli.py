# Overview: Pytest coverage for the flask CLI commands.

from tillpos.extensions import db
from tillpos.models import Business, Employee, Location, Product
from tillpos.services import session_service, stock_service


def _demo_location(name):
    return db.session.query(Location).filter_by(name=name).one()


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed-demo", "--business", "Demo Shop"])
    assert result.exit_code == 0, result.output
    assert "PASS Created business" in result.output

    db_session.expire_all()
    assert db_session.get(Product, "DEMO-SODA").stock == 48
    assert stock_service.get_quantity("DEMO-SODA", _demo_location("Front Shop").id) == 24
    assert db_session.get(Product, "DEMO-DELIVERY").is_service is True

    result = runner.invoke(args=["system", "seed-demo", "--business", "Demo Shop"])
    assert result.exit_code == 0, result.output
    assert "PASS Using existing business" in result.output
    assert db_session.query(Business).count() == 1
    db_session.expire_all()
    assert db_session.get(Product, "DEMO-SODA").stock == 48


def test_sessions_issue_prints_usable_token(app, db_session, cashier_a):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["sessions", "issue", "--employee-id", str(cashier_a.id)])
    assert result.exit_code == 0, result.output

    token = result.output.strip().splitlines()[-1]
    context = session_service.validate_session(token)
    assert context is not None
    assert context.caller.employee_id == cashier_a.id


def test_sessions_issue_unknown_employee(app, db_session):
    result = app.test_cli_runner().invoke(args=["sessions", "issue", "--employee-id", "99999"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_sessions_revoke(app, db_session, cashier_a):
    session, token = session_service.create_session(cashier_a.id)
    result = app.test_cli_runner().invoke(args=["sessions", "revoke", str(session.id)])
    assert "revoked" in result.output
    assert session_service.validate_session(token) is None


def test_stock_reconcile(app, db_session, soda, front_a, stocked):
    stocked(soda, front_a, 4)
    db_session.get(Product, soda.id).stock = 40
    db_session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["stock", "reconcile", "--dry-run"])
    assert "DRIFT SODA-A: 40 -> 4" in result.output
    db_session.expire_all()
    assert db_session.get(Product, soda.id).stock == 40

    result = runner.invoke(args=["stock", "reconcile"])
    assert "Fixed 1 drifted product(s)" in result.output
    db_session.expire_all()
    assert db_session.get(Product, soda.id).stock == 4

    result = runner.invoke(args=["stock", "reconcile"])
    assert "PASS All product totals match the ledger" in result.output


def test_init_db(app, db_session):
    result = app.test_cli_runner().invoke(args=["system", "init-db"])
    assert result.exit_code == 0
    assert db_session.query(Employee).count() == 0
