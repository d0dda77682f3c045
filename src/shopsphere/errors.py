"""
Failure taxonomy of the order/payment workflow.

Handlers in ``shopsphere.main`` turn each of these into an HTTP status.
A signature mismatch is not listed here: it is an expected business outcome
and is returned as ``VerificationResult(verified=False)``.
"""


class OrderError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(OrderError):
    status_code = 400


class UserExistsError(ValidationError):
    pass


class GatewayError(OrderError):
    status_code = 500


class NotFoundError(OrderError):
    status_code = 404


class InvalidTransition(OrderError):
    status_code = 409


class ConcurrencyConflict(OrderError):
    status_code = 409


class PersistenceError(OrderError):
    """The gateway intent exists remotely but the local order could not be saved."""
    status_code = 500

    def __init__(self, message: str, intent_id: str):
        super().__init__(message)
        self.intent_id = intent_id
