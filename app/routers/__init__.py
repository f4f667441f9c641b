from .subscription import router as subscription_router
from .thumbnail_usage import router as thumbnail_usage_router
from .user_plan import router as user_plan_router
from .admin_subscription import router as admin_subscription_router
