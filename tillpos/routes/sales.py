# Overview: Flask API routes for sales; parses input and returns JSON responses.

# tillpos/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import TillError
from ..services import sales_service
from ..validation import parse_bool, parse_int, parse_sale_header, parse_sale_lines


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _limit_arg(default: int = 200) -> int:
    raw = request.args.get("limit")
    if raw is None:
        return default
    return min(parse_int(raw, "limit", minimum=1), 1000)


@sales_bp.post("")
@require_auth
def create_sale_route():
    """
    Create and settle a sale.

    Body: {"items": [...], "location_id"?, "is_proforma"?, "subtotal_cents"?,
    "vat_cents"?, "total_cents"?, "delivery_fee_cents"?, "customer_id"?,
    "payment_method"?, "particulars"?}
    """
    try:
        data = request.get_json(silent=True) or {}
        lines = parse_sale_lines(data.get("items"))
        header = parse_sale_header(data)
        location_id = data.get("location_id")
        if location_id is not None:
            location_id = parse_int(location_id, "location_id", minimum=1)

        sale = sales_service.create_sale(
            g.caller,
            lines,
            header,
            location_id=location_id,
            is_proforma=parse_bool(data.get("is_proforma"), "is_proforma"),
        )
        return jsonify({"sale_id": sale.id, "sale": sale.to_dict()}), 201

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_auth
def list_sales_route():
    try:
        sales = sales_service.list_sales(g.caller, limit=_limit_arg())
        return jsonify({"sales": [sale.to_dict() for sale in sales]}), 200
    except TillError as e:
        return jsonify(e.to_dict()), e.http_status


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(g.caller, sale_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except TillError as e:
        return jsonify(e.to_dict()), e.http_status


@sales_bp.put("/<int:sale_id>")
@require_auth
def update_sale_route(sale_id: int):
    """
    Replace a sale's items. Invalid items are reported, valid ones saved.
    Stock is not adjusted.
    """
    try:
        data = request.get_json(silent=True) or {}
        result = sales_service.update_sale(
            g.caller,
            sale_id,
            data.get("items"),
            parse_sale_header(data),
        )
        return jsonify({
            "inserted_count": result["inserted_count"],
            "rejected_items": result["rejected_items"],
            "sale": result["sale"].to_dict(),
        }), 200

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
@require_auth
def delete_sale_route(sale_id: int):
    try:
        sales_service.delete_sale(g.caller, sale_id)
        return jsonify({"ok": True}), 200

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500
