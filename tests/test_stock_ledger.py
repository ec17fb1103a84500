# Overview: Pytest coverage for the per-location stock ledger and aggregate projector.

"""
Stock Ledger Tests

Covers:
- increase/decrease/move through the public operations
- clamp-at-zero decrements and their history notes
- missing-row decrement is a no-op
- move round trip restores both locations
- Product.stock always equals the sum of its ledger rows
- tenant checks on product and location ids
- best-effort history writes never abort the mutation
"""

import pytest

from tillpos.errors import AccessDeniedError, NotFoundError, ValidationError
from tillpos.extensions import db
from tillpos.models import AuditLog, Product, StockEntry, StockHistory
from tillpos.models.inventory import HISTORY_IN, HISTORY_MOVE_IN, HISTORY_MOVE_OUT, HISTORY_OUT
from tillpos.services import aggregate_service, stock_service
from tillpos.services.concurrency import begin_immediate, best_effort
from tillpos.services.stock_service import StockError


def _quantity(product_id, location_id):
    return stock_service.get_quantity(product_id, location_id)


def _aggregate(product_id):
    db.session.expire_all()
    return db.session.get(Product, product_id).stock


class TestIncreaseDecrease:
    def test_increase_creates_row(self, db_session, admin_a_caller, soda, front_a):
        summary = stock_service.increase_stock(
            admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=10,
            supplier_id="SUP-1", batch_number="B-7",
        )
        assert summary["total"] == 10
        assert summary["locations"] == [{"location_id": front_a.id, "quantity": 10}]

        history = db_session.query(StockHistory).filter_by(product_id=soda.id).one()
        assert history.type == HISTORY_IN
        assert history.change_amount == 10
        assert history.supplier_id == "SUP-1"
        assert history.batch_number == "B-7"

    def test_increase_adds_to_existing_row(self, db_session, admin_a_caller, soda, front_a, stocked):
        stocked(soda, front_a, 4)
        summary = stock_service.increase_stock(
            admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=6,
        )
        assert summary["total"] == 10
        assert db_session.query(StockEntry).filter_by(product_id=soda.id).count() == 1

    def test_decrease_clamps_at_zero(self, db_session, admin_a_caller, soda, front_a, stocked):
        stocked(soda, front_a, 3)
        summary = stock_service.decrease_stock(
            admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=5,
        )
        assert summary["total"] == 0
        assert _quantity(soda.id, front_a.id) == 0

        out_row = db_session.query(StockHistory).filter_by(product_id=soda.id, type=HISTORY_OUT).one()
        assert out_row.change_amount == -3
        assert "Clamped at zero" in out_row.notes

    def test_decrease_missing_row_is_noop(self, db_session, admin_a_caller, soda, front_a):
        summary = stock_service.decrease_stock(
            admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=2,
        )
        assert summary["total"] == 0
        assert db_session.query(StockEntry).filter_by(product_id=soda.id).count() == 0
        assert db_session.query(StockHistory).filter_by(product_id=soda.id).count() == 0

    @pytest.mark.parametrize("quantity", [0, -1, True, "3"])
    def test_invalid_quantity_rejected(self, db_session, admin_a_caller, soda, front_a, quantity):
        with pytest.raises(ValidationError) as exc:
            stock_service.increase_stock(
                admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=quantity,
            )
        assert exc.value.code == "INVALID_QUANTITY"

    def test_mutations_write_audit_rows(self, db_session, admin_a_caller, soda, front_a, stocked):
        stocked(soda, front_a, 5)
        stock_service.decrease_stock(admin_a_caller, product_id=soda.id, location_id=front_a.id, quantity=1)
        actions = [row.action for row in db_session.query(AuditLog).order_by(AuditLog.id)]
        assert actions == ["increase", "decrease"]


class TestTenantScope:
    def test_foreign_location_not_found(self, db_session, admin_a_caller, soda, front_b):
        with pytest.raises(NotFoundError):
            stock_service.increase_stock(
                admin_a_caller, product_id=soda.id, location_id=front_b.id, quantity=1,
            )

    def test_foreign_product_not_found(self, db_session, cashier_b_caller, soda, front_b):
        with pytest.raises(NotFoundError):
            stock_service.increase_stock(
                cashier_b_caller, product_id=soda.id, location_id=front_b.id, quantity=1,
            )
        assert db_session.query(StockEntry).count() == 0

    def test_get_stock_entries_scoped(self, db_session, admin_a_caller, cashier_b_caller, soda, front_a, stocked):
        stocked(soda, front_a, 2)
        result = stock_service.get_stock_entries(admin_a_caller, soda.id)
        assert result["product"]["stock"] == 2
        assert [e["quantity"] for e in result["entries"]] == [2]

        with pytest.raises(NotFoundError):
            stock_service.get_stock_entries(cashier_b_caller, soda.id)


class TestMove:
    def test_move_requires_capability(self, db_session, cashier_a_caller, soda, front_a, back_a, stocked):
        stocked(soda, front_a, 5)
        with pytest.raises(AccessDeniedError):
            stock_service.move_stock(
                cashier_a_caller, product_id=soda.id,
                from_location_id=front_a.id, to_location_id=back_a.id, quantity=1,
            )
        assert _quantity(soda.id, front_a.id) == 5

    def test_move_writes_paired_history(self, db_session, stockkeeper_a_caller, soda, front_a, back_a, stocked):
        stocked(soda, front_a, 5)
        summary = stock_service.move_stock(
            stockkeeper_a_caller, product_id=soda.id,
            from_location_id=front_a.id, to_location_id=back_a.id, quantity=2,
        )
        assert summary["moved"] == 2
        assert summary["total"] == 5
        assert _quantity(soda.id, front_a.id) == 3
        assert _quantity(soda.id, back_a.id) == 2

        out_row = db_session.query(StockHistory).filter_by(type=HISTORY_MOVE_OUT).one()
        in_row = db_session.query(StockHistory).filter_by(type=HISTORY_MOVE_IN).one()
        assert out_row.change_amount == -2
        assert in_row.change_amount == 2
        assert in_row.reference_id == str(out_row.id)

    def test_move_round_trip_restores_locations(self, db_session, stockkeeper_a_caller, soda, front_a, back_a, stocked):
        stocked(soda, front_a, 7)
        stocked(soda, back_a, 1)

        for src, dst in ((front_a, back_a), (back_a, front_a)):
            stock_service.move_stock(
                stockkeeper_a_caller, product_id=soda.id,
                from_location_id=src.id, to_location_id=dst.id, quantity=4,
            )

        assert _quantity(soda.id, front_a.id) == 7
        assert _quantity(soda.id, back_a.id) == 1
        assert _aggregate(soda.id) == 8

    def test_move_conserves_total_when_source_short(self, db_session, stockkeeper_a_caller, soda, front_a, back_a, stocked):
        stocked(soda, front_a, 2)
        summary = stock_service.move_stock(
            stockkeeper_a_caller, product_id=soda.id,
            from_location_id=front_a.id, to_location_id=back_a.id, quantity=5,
        )
        assert summary["moved"] == 2
        assert summary["total"] == 2
        assert _quantity(soda.id, back_a.id) == 2

    def test_move_from_missing_row_creates_nothing(self, db_session, stockkeeper_a_caller, soda, front_a, back_a):
        summary = stock_service.move_stock(
            stockkeeper_a_caller, product_id=soda.id,
            from_location_id=front_a.id, to_location_id=back_a.id, quantity=3,
        )
        assert summary["moved"] == 0
        assert summary["locations"] == []
        assert db_session.query(StockEntry).filter_by(product_id=soda.id).count() == 0
        assert db_session.query(StockHistory).filter_by(product_id=soda.id).count() == 0

    def test_move_same_location_rejected(self, db_session, stockkeeper_a_caller, soda, front_a, stocked):
        stocked(soda, front_a, 2)
        with pytest.raises(StockError) as exc:
            stock_service.move_stock(
                stockkeeper_a_caller, product_id=soda.id,
                from_location_id=front_a.id, to_location_id=front_a.id, quantity=1,
            )
        assert exc.value.code == "SAME_LOCATION"


class TestAggregate:
    def test_aggregate_tracks_all_locations(self, db_session, admin_a_caller, soda, front_a, back_a, stocked):
        stocked(soda, front_a, 3)
        stocked(soda, back_a, 4)
        stock_service.decrease_stock(admin_a_caller, product_id=soda.id, location_id=back_a.id, quantity=1)

        assert _aggregate(soda.id) == 6
        assert aggregate_service.sum_stock(soda.id) == 6

    def test_reconcile_fixes_drift(self, db_session, business_a, soda, front_a, stocked):
        stocked(soda, front_a, 3)
        soda_row = db_session.get(Product, soda.id)
        soda_row.stock = 99
        db_session.commit()

        begin_immediate()
        drifted = aggregate_service.reconcile(business_a.id)
        db_session.commit()

        assert drifted == [{"product_id": soda.id, "before": 99, "after": 3}]
        assert _aggregate(soda.id) == 3


class TestBestEffortWrites:
    def test_failed_savepoint_keeps_outer_transaction(self, db_session, business_a, soda, front_a, stocked):
        stocked(soda, front_a, 1)

        begin_immediate()
        entry = stock_service.lock_entry(soda.id, front_a.id)
        entry.quantity = 9
        db_session.flush()

        # action is NOT NULL; the insert fails inside the savepoint
        with best_effort("audit write"):
            db_session.add(AuditLog(business_id=business_a.id, action=None, resource="stock"))

        db_session.commit()
        assert _quantity(soda.id, front_a.id) == 9
        assert db_session.query(AuditLog).filter(AuditLog.action.is_(None)).count() == 0
