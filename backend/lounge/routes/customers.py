from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_capability, require_staff
from ..errors import LedgerError
from ..services import loyalty_service


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("/<int:customer_id>/loyalty")
@require_staff
@require_capability("SELL_INVENTORY")
def loyalty_route(customer_id: int):
    """Balance and recent loyalty transactions, shown at the counter before a points sale."""
    limit = request.args.get("limit", default=20, type=int)
    limit = max(1, min(limit, 100))
    try:
        customer = loyalty_service.get_customer(customer_id)
        return jsonify({
            "customer": customer.to_dict(),
            "balance": loyalty_service.get_balance(customer_id),
            "transactions": [t.to_dict() for t in loyalty_service.list_transactions(customer_id, limit=limit)],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Unexpected error while reading loyalty balance")
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500
