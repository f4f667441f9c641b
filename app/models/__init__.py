from .user import User, Base
from .subscription import (
    Subscription,
    SubscriptionOrigin,
    SubscriptionStatus,
    can_transition,
)
