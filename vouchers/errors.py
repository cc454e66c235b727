# vouchers/errors.py
from models import AttemptStatus, VoucherStatus


class VoucherError(Exception):
    """Base for redemption and voucher management failures."""
    status_code = 400
    attempt_status = AttemptStatus.FAILED
    default_reason = "Voucher is not available for redemption"

    def __init__(self, reason=None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class VoucherNotFound(VoucherError):
    status_code = 404
    default_reason = "Voucher code not found"


class VoucherNotRedeemable(VoucherError):
    REASONS = {
        VoucherStatus.EXPIRED: "Voucher has expired",
        VoucherStatus.INACTIVE: "Voucher is no longer active",
        VoucherStatus.EXHAUSTED: "Voucher usage limit has been reached",
    }

    def __init__(self, status: VoucherStatus):
        self.status = status
        super().__init__(self.REASONS.get(status))


class RedemptionForbidden(VoucherError):
    status_code = 403
    attempt_status = AttemptStatus.BLOCKED
    default_reason = "Dealers cannot redeem this voucher"


class AlreadyRedeemed(VoucherError):
    status_code = 409
    default_reason = "Voucher already used by this user"


class UnknownVoucherType(VoucherError):
    def __init__(self, voucher_type):
        self.voucher_type = voucher_type
        super().__init__(f"Unknown voucher type: {voucher_type}")


class RedemptionTargetNotFound(VoucherError):
    status_code = 404
    default_reason = "Customer not found"


class InvalidVoucherPackage(VoucherError):
    default_reason = "Associated package not found or inactive"


class InvalidVoucherDefinition(VoucherError):
    default_reason = "Invalid voucher"


class DuplicateVoucherCode(VoucherError):
    status_code = 409
    default_reason = "Voucher code already exists"


class VoucherPermissionError(VoucherError):
    status_code = 403
    attempt_status = AttemptStatus.BLOCKED
    default_reason = "Insufficient permissions"


class VoucherNotFoundById(VoucherError):
    status_code = 404
    default_reason = "Voucher not found"


class PersistenceFailure(VoucherError):
    status_code = 500
    attempt_status = AttemptStatus.ERROR
    default_reason = "Failed to redeem voucher"
