# Overview: Flask API routes for returns against a sale.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import TillError, ValidationError
from ..services import return_service
from ..validation import parse_int


returns_bp = Blueprint("returns", __name__, url_prefix="/api/sales")


@returns_bp.post("/<int:sale_id>/returns")
@require_auth
def create_return_route(sale_id: int):
    """
    Return part or all of one sale line.

    Body: {"product_id", "quantity", "reason", "sale_item_id"?}
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if not product_id:
            raise ValidationError("product_id is required")
        if data.get("quantity") is None:
            raise ValidationError("quantity is required", code="INVALID_QUANTITY")
        quantity = parse_int(data.get("quantity"), "quantity", minimum=1, code="INVALID_QUANTITY")

        record, sale = return_service.return_item(
            g.caller,
            sale_id,
            str(product_id),
            quantity,
            data.get("reason"),
            sale_item_id=data.get("sale_item_id"),
        )
        return jsonify({
            "return_id": record.id,
            "return": record.to_dict(),
            "sale": sale.to_dict(),
        }), 201

    except TillError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process return on sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:sale_id>/returns")
@require_auth
def list_returns_route(sale_id: int):
    records = return_service.list_returns(g.caller, sale_id)
    return jsonify({"returns": [r.to_dict() for r in records]}), 200
