#======================================================================================
#
# BIZPOINTS ADMIN API: commission runs, previews, manual adjustments, ledger history
#
#=======================================================================================

from functools import wraps
from flask import jsonify, request, Blueprint, current_app
from flask_login import current_user

from extensions import db
from models import Role
from bizpoints.commission import process_commission, preview_commission
from bizpoints.config import CommissionConfigHelper
from bizpoints.errors import BizPointsError
from bizpoints.ledger import adjust_balance, get_transactions, reconcile_point_balance

DEALER_ROLES = (Role.OWNER, Role.ADMIN, Role.EMPLOYEE, Role.SUBDEALER)
STAFF_ROLES = (Role.OWNER, Role.ADMIN, Role.EMPLOYEE)


def role_required(*roles):
    """
    Decorator to restrict a route to authenticated users holding one of `roles`.
    - 401 when there is no logged-in user.
    - 403 when the user's role is not allowed.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({"error": "Unauthorized"}), 401

            if roles and current_user.role not in roles:
                return jsonify({"error": "Insufficient permissions"}), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def _int_arg(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _bizpoints_error(e: BizPointsError):
    return jsonify({"error": e.message}), e.status_code


admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@admin_bp.route('/bizpoints/commission', methods=['POST'])
@role_required(*STAFF_ROLES)
def run_commission():
    """Distribute commission for a completed customer transaction."""
    data = request.get_json(silent=True) or {}
    customer_id = _int_arg(data.get('customerId'))
    amount = data.get('transactionAmount')
    reference = data.get('transactionReference')

    if not customer_id or amount is None or not reference:
        return jsonify({
            "error": "Missing required fields: customerId, transactionAmount, transactionReference"
        }), 400

    try:
        result = process_commission(customer_id, amount, reference)
    except BizPointsError as e:
        return _bizpoints_error(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Commission processing error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    body = result.to_dict()
    body["message"] = "Commission processing completed successfully"
    return jsonify(body), 201


@admin_bp.route('/bizpoints/commission', methods=['GET'])
@role_required(*STAFF_ROLES)
def commission_preview():
    customer_id = _int_arg(request.args.get('customerId') or request.args.get('customer_id'))
    amount = request.args.get('amount')
    if not customer_id or not amount:
        return jsonify({"error": "Valid customerId and amount parameters are required"}), 400

    try:
        return jsonify(preview_commission(customer_id, amount)), 200
    except BizPointsError as e:
        return _bizpoints_error(e)


@admin_bp.route('/bizpoints/rates', methods=['GET'])
@role_required(*DEALER_ROLES)
def commission_rates():
    return jsonify(CommissionConfigHelper.get_rate_table()), 200


@admin_bp.route('/bizpoints', methods=['POST'])
@role_required(*DEALER_ROLES)
def create_adjustment():
    """Manual BizPoints movement: ADMIN_CREDIT, ADMIN_DEBIT, BONUS or SETTLEMENT_WITHDRAW."""
    data = request.get_json(silent=True) or {}
    user_id = _int_arg(data.get('userId'))
    entry_type = data.get('type')
    amount = data.get('amount')

    if not user_id or not entry_type or amount is None:
        return jsonify({"error": "Missing required fields: userId, type, amount"}), 400

    try:
        result = adjust_balance(user_id, entry_type, amount, current_user, description=data.get('description'))
    except BizPointsError as e:
        return _bizpoints_error(e)

    result["message"] = "BizPoints transaction created successfully"
    return jsonify(result), 201


@admin_bp.route('/bizpoints/transactions', methods=['GET'])
@role_required(*DEALER_ROLES)
def list_transactions():
    user_id = _int_arg(request.args.get('userId') or request.args.get('user_id')) or current_user.id
    if current_user.role.level > Role.ADMIN.level and user_id != current_user.id:
        return jsonify({"error": "Insufficient permissions"}), 403

    limit = min(_int_arg(request.args.get('limit')) or 50, 200)
    offset = max(_int_arg(request.args.get('offset')) or 0, 0)
    try:
        return jsonify(get_transactions(user_id, limit=limit, offset=offset)), 200
    except BizPointsError as e:
        return _bizpoints_error(e)


@admin_bp.route('/bizpoints/reconcile/<int:user_id>', methods=['GET', 'POST'])
@role_required(Role.OWNER, Role.ADMIN)
def reconcile(user_id):
    fix = request.method == 'POST'
    try:
        return jsonify(reconcile_point_balance(user_id, fix=fix)), 200
    except BizPointsError as e:
        return _bizpoints_error(e)
