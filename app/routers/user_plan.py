from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import get_current_user
from app.models import User
from app.services import quota_mirror

router = APIRouter(prefix="/user/plan", tags=["User Plan"])


@router.get("/info", summary="Current plan and usage mirror")
@limiter.limit("30/minute")
def get_user_plan_info(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if quota_mirror.reset_thumbnail_usage_if_needed(db, user):
        db.commit()
    return {
        "plan": {
            "subscriptionPlan": user.subscription_plan,
            "hasPlan": user.has_plan,
            "thumbnailUsage": user.thumbnail_usage(),
        }
    }
