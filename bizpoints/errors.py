# bizpoints/errors.py


class BizPointsError(Exception):
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidCommissionTarget(BizPointsError):
    """Customer is missing, is not a CUSTOMER, or has no dealer assigned."""
    status_code = 400


class InvalidCommissionRequest(BizPointsError):
    status_code = 400


class InvalidHierarchy(BizPointsError):
    status_code = 400


class InvalidLedgerAdjustment(BizPointsError):
    status_code = 400


class InsufficientBalance(BizPointsError):
    status_code = 400


class LedgerPermissionError(BizPointsError):
    status_code = 403


class LedgerUserNotFound(BizPointsError):
    status_code = 404


class PersistenceFailure(BizPointsError):
    status_code = 500
