from enrollpay.models.policy import Policy
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus, PaymentMethodKind
from enrollpay.models.enrollment_event import EnrollmentEvent
from enrollpay.models.stripe_event import ProcessedStripeEvent
from enrollpay.models.rate_limit_counter import RateLimitCounter

__all__ = [
    "Policy", "Enrollment", "EnrollmentStatus", "PaymentMethodKind",
    "EnrollmentEvent", "ProcessedStripeEvent", "RateLimitCounter",
]
