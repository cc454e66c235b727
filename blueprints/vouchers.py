from datetime import datetime, timezone
from flask import jsonify, request, Blueprint, current_app
from flask_login import current_user

from extensions import db
from models import Role
from blueprints.admin import role_required, DEALER_ROLES
from vouchers.errors import VoucherError
from vouchers.history import get_redemption_history, get_redemption_attempt_stats, get_available_discounts
from vouchers.management import create_voucher, deactivate_voucher
from vouchers.redemption import redeem_voucher

bp = Blueprint('vouchers', __name__, url_prefix='/api/vouchers')

ALL_ROLES = tuple(Role)


def _voucher_error(e: VoucherError):
    return jsonify({"error": e.reason}), e.status_code


def _parse_expiry(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return False
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _client_ip():
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


@bp.route('', methods=['POST'])
@role_required(*DEALER_ROLES)
def create():
    data = request.get_json(silent=True) or {}
    if not data.get('code') or not data.get('type') or data.get('value') in (None, ''):
        return jsonify({"error": "Missing required fields: code, type, value"}), 400

    expires_at = _parse_expiry(data.get('expires_at'))
    if expires_at is False:
        return jsonify({"error": "expires_at must be an ISO-8601 timestamp"}), 400

    try:
        voucher = create_voucher(
            current_user,
            data['code'],
            data['type'],
            data['value'],
            description=data.get('description'),
            usage_limit=data.get('usage_limit'),
            expires_at=expires_at,
            package_id=data.get('package_id'),
            allow_dealer_redemption=data.get('allow_dealer_redemption', False),
            min_purchase_amount=data.get('min_purchase_amount'),
            max_discount_amount=data.get('max_discount_amount'),
        )
    except VoucherError as e:
        return _voucher_error(e)

    return jsonify({"message": "Voucher created successfully", "voucher": voucher.to_dict()}), 201


@bp.route('/<int:voucher_id>/deactivate', methods=['POST'])
@role_required(*DEALER_ROLES)
def deactivate(voucher_id):
    try:
        voucher = deactivate_voucher(voucher_id, current_user)
    except VoucherError as e:
        return _voucher_error(e)
    return jsonify({"message": "Voucher deactivated", "voucher": voucher}), 200


@bp.route('/redeem', methods=['POST'])
@role_required(*ALL_ROLES)
def redeem():
    data = request.get_json(silent=True) or {}
    code = data.get('code') or data.get('voucherCode')
    if not code or not str(code).strip():
        return jsonify({"error": "Voucher code is required"}), 400

    customer_id = data.get('customer_id') or data.get('customerId')
    if customer_id is not None:
        try:
            customer_id = int(customer_id)
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid customer id"}), 400

    try:
        result = redeem_voucher(
            str(code),
            current_user,
            target_customer_id=customer_id,
            ip_address=_client_ip(),
            user_agent=request.headers.get('User-Agent', 'unknown'),
        )
    except VoucherError as e:
        return _voucher_error(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Voucher redemption error: {e}", exc_info=True)
        return jsonify({"error": "Failed to redeem voucher"}), 500

    result["success"] = True
    return jsonify(result), 200


@bp.route('/redeem', methods=['GET'])
@role_required(*ALL_ROLES)
def redemption_history():
    user_id = current_user.id
    requested = request.args.get('customer_id') or request.args.get('customerId')
    if requested:
        try:
            requested = int(requested)
        except ValueError:
            return jsonify({"error": "Invalid customer id"}), 400
        if requested != current_user.id and current_user.role is Role.CUSTOMER:
            return jsonify({"error": "Insufficient permissions"}), 403
        user_id = requested

    history = get_redemption_history(user_id)
    return jsonify({
        "success": True,
        "customerId": user_id,
        "redemptionHistory": history,
        "attemptStatistics": get_redemption_attempt_stats(user_id),
        "availableDiscounts": get_available_discounts(user_id),
        "totalRedemptions": len(history),
    }), 200
