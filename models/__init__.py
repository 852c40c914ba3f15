from .billing import (  # noqa: F401
    BillingWebhookEventLog,
    Organization,
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    UsageCounter,
)
from .practice import PracticeAppointment, PracticeMember, PracticePatient  # noqa: F401
