# Overview: Threaded oversell and move tests against a file-backed SQLite database.

"""
Concurrency tests.

Each worker runs in its own thread with its own app context (and so its
own session and connection) against a temp-file database, the way
concurrent terminals hit the service.
"""

import threading

import pytest

from tillpos import create_app
from tillpos.errors import InsufficientStockError
from tillpos.extensions import db
from tillpos.models import Business, Employee, Location, Product, Role, Sale, StockEntry
from tillpos.permissions import INVENTORY_MOVE
from tillpos.services import sales_service, stock_service
from tillpos.services.access_service import resolve_caller
from tillpos.validation import SaleLineInput

pytestmark = pytest.mark.concurrency


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 30}},
        'DB_RETRY_ATTEMPTS': 5,
        'DB_RETRY_BACKOFF': 0.05,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def shop(file_app):
    """One business, two locations, a cashier and a stockkeeper, 10 units at Front."""
    with file_app.app_context():
        business = Business(name="Concurrency Shop")
        db.session.add(business)
        db.session.flush()

        front = Location(business_id=business.id, name="Front")
        back = Location(business_id=business.id, name="Back")
        role = Role(business_id=business.id, name="stockkeeper", permissions=[INVENTORY_MOVE])
        db.session.add_all([front, back, role])
        db.session.flush()

        cashier = Employee(business_id=business.id, email="till@shop.test", default_location_id=front.id)
        keeper = Employee(business_id=business.id, email="keeper@shop.test", role_id=role.id,
                          default_location_id=back.id)
        product = Product(id="CONC-1", business_id=business.id, name="Concurrent Product", price_cents=1000)
        db.session.add_all([cashier, keeper, product])
        db.session.commit()

        ids = {
            "front": front.id,
            "back": back.id,
            "cashier": resolve_caller(cashier.id),
            "keeper": resolve_caller(keeper.id),
        }
        stock_service.increase_stock(ids["keeper"], product_id="CONC-1", location_id=front.id, quantity=10)
        db.session.remove()
    return ids


def _run_all(workers):
    threads = [threading.Thread(target=w) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)


def test_concurrent_sales_do_not_oversell(file_app, shop):
    results = {}

    def sell(name, quantity):
        def worker():
            with file_app.app_context():
                try:
                    sale = sales_service.create_sale(
                        shop["cashier"],
                        [SaleLineInput(product_id="CONC-1", quantity=quantity, price_cents=1000)],
                    )
                    results[name] = ("ok", sale.id)
                except InsufficientStockError as e:
                    results[name] = ("insufficient", e.details["available"])
                except Exception as e:
                    results[name] = ("error", repr(e))
                finally:
                    db.session.remove()
        return worker

    _run_all([sell("a", 7), sell("b", 5)])

    outcomes = sorted(r[0] for r in results.values())
    assert outcomes == ["insufficient", "ok"], results

    with file_app.app_context():
        remaining = stock_service.get_quantity("CONC-1", shop["front"])
        assert remaining in (3, 5)
        assert db.session.query(Sale).count() == 1
        assert db.session.get(Product, "CONC-1").stock == remaining
        db.session.remove()


def test_many_small_sales_stop_at_zero(file_app, shop):
    outcomes = []
    lock = threading.Lock()

    def worker():
        with file_app.app_context():
            try:
                sales_service.create_sale(
                    shop["cashier"],
                    [SaleLineInput(product_id="CONC-1", quantity=3, price_cents=1000)],
                )
                result = "ok"
            except InsufficientStockError:
                result = "insufficient"
            except Exception as e:
                result = repr(e)
            finally:
                db.session.remove()
            with lock:
                outcomes.append(result)

    _run_all([worker for _ in range(6)])

    assert outcomes.count("ok") == 3, outcomes
    assert outcomes.count("insufficient") == 3, outcomes
    with file_app.app_context():
        assert stock_service.get_quantity("CONC-1", shop["front"]) == 1
        db.session.remove()


def test_opposite_moves_conserve_total(file_app, shop):
    with file_app.app_context():
        stock_service.increase_stock(shop["keeper"], product_id="CONC-1", location_id=shop["back"], quantity=10)
        db.session.remove()

    errors = []

    def move(src, dst):
        def worker():
            with file_app.app_context():
                try:
                    for _ in range(5):
                        stock_service.move_stock(
                            shop["keeper"], product_id="CONC-1",
                            from_location_id=shop[src], to_location_id=shop[dst], quantity=1,
                        )
                except Exception as e:
                    errors.append(repr(e))
                finally:
                    db.session.remove()
        return worker

    _run_all([move("front", "back"), move("back", "front")])

    assert errors == []
    with file_app.app_context():
        rows = db.session.query(StockEntry).filter_by(product_id="CONC-1").all()
        assert sum(r.quantity for r in rows) == 20
        assert db.session.get(Product, "CONC-1").stock == 20
        db.session.remove()
