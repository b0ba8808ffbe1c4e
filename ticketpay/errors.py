"""
Error taxonomy.

Every error carries the HTTP status the API answers with and a public
message. The message is what users get to see, so it must never contain
gateway or database payloads; those go to the log.
"""


class PaymentError(Exception):
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        self.message = message or self.default_message
        # internal detail, logged and stored, never returned
        self.detail = detail
        super().__init__(self.message)


class ValidationError(PaymentError):
    status_code = 400
    default_message = "Invalid request."


class NotFoundError(PaymentError):
    status_code = 404
    default_message = "Ticket not found."


class AlreadyConfirmedError(PaymentError):
    status_code = 409
    default_message = "This ticket has already been paid."


class GatewayError(PaymentError):
    status_code = 502
    default_message = "Could not reach the payment provider. Please try again."


class GatewayRejectedError(GatewayError):
    default_message = "The payment provider rejected the request."


class GatewayUnreachableError(GatewayError):
    status_code = 504


class ConflictError(PaymentError):
    status_code = 409
    default_message = "The ticket was updated concurrently."


class TransientError(ConflictError):
    status_code = 503
    default_message = "The ticket is busy. Please try again."


class EmailDispatchError(PaymentError):
    status_code = 502
    default_message = "Failed to send the receipt email."
