# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import TillError, ValidationError
from ..services import stock_service
from ..validation import parse_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _product_id(data: dict) -> str:
    product_id = data.get("product_id")
    if product_id is None or not str(product_id).strip():
        raise ValidationError("product_id is required")
    return str(product_id).strip()


def _required_int(data: dict, field: str, **kwargs) -> int:
    if data.get(field) is None:
        raise ValidationError(f"{field} is required", code=kwargs.get("code"))
    return parse_int(data.get(field), field, **kwargs)


def _metadata(data: dict) -> dict:
    return {
        "supplier_id": data.get("supplier_id"),
        "batch_number": data.get("batch_number"),
        "reference_id": data.get("reference_id"),
    }


@stock_bp.post("/increase")
@require_auth
def increase_stock_route():
    """Body: {"product_id", "location_id", "quantity", "supplier_id"?, "batch_number"?, "reference_id"?, "notes"?}"""
    try:
        data = request.get_json(silent=True) or {}
        summary = stock_service.increase_stock(
            g.caller,
            product_id=_product_id(data),
            location_id=_required_int(data, "location_id", minimum=1),
            quantity=_required_int(data, "quantity", minimum=1, code="INVALID_QUANTITY"),
            notes=data.get("notes"),
            **_metadata(data),
        )
        return jsonify(summary), 200

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to increase stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/decrease")
@require_auth
def decrease_stock_route():
    try:
        data = request.get_json(silent=True) or {}
        summary = stock_service.decrease_stock(
            g.caller,
            product_id=_product_id(data),
            location_id=_required_int(data, "location_id", minimum=1),
            quantity=_required_int(data, "quantity", minimum=1, code="INVALID_QUANTITY"),
            notes=data.get("notes"),
            **_metadata(data),
        )
        return jsonify(summary), 200

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to decrease stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/move")
@require_auth
def move_stock_route():
    """
    Move stock between two locations.

    Requires: super-admin or the inventory:move permission
    """
    try:
        data = request.get_json(silent=True) or {}
        summary = stock_service.move_stock(
            g.caller,
            product_id=_product_id(data),
            from_location_id=_required_int(data, "from_location_id", minimum=1),
            to_location_id=_required_int(data, "to_location_id", minimum=1),
            quantity=_required_int(data, "quantity", minimum=1, code="INVALID_QUANTITY"),
            **_metadata(data),
        )
        return jsonify(summary), 200

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to move stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/history")
@stock_bp.get("/history/<product_id>")
@require_auth
def stock_history_route(product_id=None):
    try:
        limit = request.args.get("limit")
        limit = min(parse_int(limit, "limit", minimum=1), 1000) if limit is not None else 200
        rows = stock_service.list_stock_history(g.caller, product_id=product_id, limit=limit)
        return jsonify({"history": [row.to_dict() for row in rows]}), 200
    except TillError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/<product_id>")
@require_auth
def get_stock_route(product_id: str):
    try:
        return jsonify(stock_service.get_stock_entries(g.caller, product_id)), 200
    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
