import hashlib
import hmac
import time
from datetime import datetime, timezone
from functools import wraps

from flask import request, jsonify, current_app, Blueprint
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Payment, PaymentStatus, WebhookEvent
from blueprints.package_helpers import PackageActivationHelper
from bizpoints.commission import process_commission
from bizpoints.errors import InvalidCommissionTarget
from logger import payments_logger as logger

bp = Blueprint('payment_webhooks', __name__)

COMPLETED_EVENT = 'collection.completed'
FAILED_EVENTS = ('collection.failed', 'collection.cancelled')


def validate_webhook_signature(f):
    """Check X-Webhook-Signature when PAYMENT_WEBHOOK_SECRET is configured."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('PAYMENT_WEBHOOK_SECRET')
        if not secret:
            return f(*args, **kwargs)

        signature = request.headers.get('X-Webhook-Signature')
        timestamp = request.headers.get('X-Webhook-Timestamp')
        if not signature or not timestamp:
            return jsonify({"error": "Missing security headers"}), 401

        try:
            age = abs(time.time() - int(timestamp))
        except ValueError:
            return jsonify({"error": "Invalid timestamp"}), 401
        if age > current_app.config.get('WEBHOOK_TOLERANCE_SECONDS', 300):
            return jsonify({"error": "Expired request"}), 401

        expected_signature = hmac.new(
            secret.encode(),
            request.get_data() + timestamp.encode(),
            hashlib.sha256
        ).hexdigest()

        if not hmac.compare_digest(signature, expected_signature):
            logger.warning(f"Invalid webhook signature from {request.remote_addr}")
            return jsonify({"error": "Invalid signature"}), 401

        return f(*args, **kwargs)
    return decorated_function


@bp.route('/payments/webhook', methods=['POST'])
@validate_webhook_signature
def payment_webhook():
    """
    Payment gateway webhook. Always acknowledges so the gateway stops retrying;
    the outcome is recorded on the stored WebhookEvent.
    """
    webhook_data = request.get_json(silent=True)
    if not webhook_data:
        logger.error("Webhook: No JSON data received")
        return jsonify({"status": "acknowledged"}), 200

    event_type = webhook_data.get('event_type')
    transaction_data = webhook_data.get('transaction') or {}
    reference = transaction_data.get('reference')
    status = transaction_data.get('status')

    event = WebhookEvent(
        provider=(webhook_data.get('collection') or {}).get('provider') or 'gateway',
        event_type=event_type,
        payload=webhook_data,
        signature=request.headers.get('X-Webhook-Signature'),
        reference=reference,
    )
    try:
        db.session.add(event)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Webhook: failed to store event for {reference}: {e}", exc_info=True)
        return jsonify({"status": "acknowledged"}), 200

    if not all([event_type, reference, status]):
        logger.error(
            f"Webhook: Missing required fields - event_type: {event_type}, reference: {reference}, status: {status}"
        )
        _finish_event(event, False, "Missing required fields")
        return jsonify({"status": "acknowledged"}), 200

    logger.info(f"Webhook processing: {event_type} for {reference}")

    payment = Payment.query.filter_by(reference=reference).first()
    if not payment:
        logger.warning(f"Webhook: Unknown reference {reference}")
        _finish_event(event, False, "Unknown payment reference")
        return jsonify({"status": "acknowledged"}), 200

    if payment.status == PaymentStatus.COMPLETED:
        logger.info(f"Webhook: Already processed {reference}")
        _finish_event(event, True, "Already processed")
        return jsonify({"status": "acknowledged"}), 200

    if event_type == COMPLETED_EVENT and status == 'completed':
        return handle_successful_payment(event, payment, webhook_data)
    if event_type in FAILED_EVENTS:
        return handle_failed_payment(event, payment)

    logger.info(f"Webhook: Unhandled event {event_type} for {reference}")
    _finish_event(event, False, f"Unhandled event {event_type}")
    return jsonify({"status": "acknowledged"}), 200


def handle_successful_payment(event, payment, webhook_data):
    """Complete the payment and activate its package, then pay dealer commission."""
    try:
        collection_data = webhook_data.get('collection') or {}
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = datetime.now(timezone.utc)
        payment.external_ref = (webhook_data.get('transaction') or {}).get('uuid') or payment.external_ref
        payment.provider = collection_data.get('provider') or payment.provider

        if payment.package is not None and payment.user is not None:
            subscription, _ = PackageActivationHelper.activate_package(
                payment.user,
                payment.package,
                purchase_type='payment',
                payment_id=payment.id,
            )
            logger.info(f"Payment {payment.reference}: subscription {subscription.id} activated for user {payment.user_id}")

        event.mark_processed(success=True)
        db.session.commit()
        logger.info(f"Payment {payment.reference} completed successfully")
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to process successful payment {payment.reference}: {e}", exc_info=True)
        _finish_event(event, False, "Payment completion failed")
        return jsonify({"status": "acknowledged"}), 200

    # Commission never affects the payment outcome
    reference = payment.reference
    try:
        result = process_commission(payment.user_id, payment.amount, reference)
        logger.info(
            f"Payment {reference}: commission distributed {result.total_distributed} "
            f"to {len(result.commissions)} dealer(s)"
        )
    except InvalidCommissionTarget as e:
        logger.info(f"Payment {reference}: no commission paid ({e.message})")
    except Exception as e:
        db.session.rollback()
        logger.error(f"Payment {reference}: commission processing failed: {e}", exc_info=True)

    return jsonify({"status": "success"}), 200


def handle_failed_payment(event, payment):
    try:
        payment.status = PaymentStatus.FAILED
        event.mark_processed(success=True, remarks="Payment marked as failed")
        db.session.commit()
        logger.warning(f"Payment {payment.reference} marked as failed")
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to process failed payment {payment.reference}: {e}", exc_info=True)
    return jsonify({"status": "acknowledged"}), 200


def _finish_event(event, success, remarks):
    try:
        event.mark_processed(success=success, remarks=remarks)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Webhook: failed to update event {event.id}: {e}", exc_info=True)
