"""
Domain errors for the enrollment payment flow.

Every error carries the HTTP status the API layer answers with and a message
that is safe to show to a patient. Errors on the money/consent path are
raised and block the operation; best-effort work (CRM push, email, consent
PDF) never raises into the financial path.
"""


class EnrollmentError(Exception):
    status_code = 400
    message = "Request could not be completed"

    def __init__(self, message: str = None):
        if message:
            self.message = message
        super().__init__(self.message)


class InvalidToken(EnrollmentError):
    """Malformed or unknown token. Deliberately indistinguishable from each other."""
    status_code = 404
    message = "Invalid or expired enrollment link"


class ExpiredLink(EnrollmentError):
    status_code = 410
    message = "This enrollment link has expired"


class TerminalStateConflict(EnrollmentError):
    status_code = 409
    message = "This enrollment can no longer be changed"


class InvalidRequest(EnrollmentError):
    status_code = 400


class NotFound(EnrollmentError):
    status_code = 404
    message = "Not found"


class Unauthorized(EnrollmentError):
    status_code = 401
    message = "Unauthorized"


class RateLimitExceeded(EnrollmentError):
    status_code = 429
    message = "Too many requests. Please try again later."


class SignatureVerificationFailed(EnrollmentError):
    status_code = 400
    message = "Invalid signature"


class InvalidPayload(EnrollmentError):
    status_code = 400
    message = "Invalid payload"


class DuplicateEvent(EnrollmentError):
    """Settlement event already applied. Benign; callers acknowledge it."""
    status_code = 200
    message = "Event already processed"


class UpstreamProcessorError(EnrollmentError):
    status_code = 502
    message = "Payment processor is unavailable. Please try again."


class ConfigurationError(EnrollmentError):
    status_code = 500
    message = "Service is not configured"
