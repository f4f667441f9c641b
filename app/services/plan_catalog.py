"""
Plan catalog: the only place plan prices and credit limits are defined.

Usage:
    limit = plan_catalog.limit_for("basic")      # 50
    price = plan_catalog.price_for("pro")        # 7900 (minor units)
"""
from dataclasses import dataclass

from app.core.errors import UnknownPlan

FREE_PLAN = "free"

# Unlimited tiers use a large sentinel instead of infinity so that
# used/limit arithmetic stays plain integer arithmetic.
UNLIMITED_CREDITS = 999999


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly_price_minor_units: int
    credit_limit: int
    description: str

    @property
    def is_paid(self) -> bool:
        return self.monthly_price_minor_units > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.monthly_price_minor_units,
            "credits": self.credit_limit,
            "unlimited": self.credit_limit >= UNLIMITED_CREDITS,
            "description": self.description,
        }


PLANS_CATALOG = {
    "free": Plan(
        id="free",
        name="Free",
        monthly_price_minor_units=0,
        credit_limit=3,
        description="3 AI thumbnails total",
    ),
    "basic": Plan(
        id="basic",
        name="Basic",
        monthly_price_minor_units=2900,
        credit_limit=50,
        description="50 AI thumbnails/month",
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        monthly_price_minor_units=7900,
        credit_limit=UNLIMITED_CREDITS,
        description="Unlimited AI thumbnails",
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        monthly_price_minor_units=19900,
        credit_limit=UNLIMITED_CREDITS,
        description="Everything in Pro + API Access",
    ),
}


def is_valid_plan(plan_id) -> bool:
    return isinstance(plan_id, str) and plan_id in PLANS_CATALOG


def get_plan(plan_id) -> Plan:
    if not is_valid_plan(plan_id):
        raise UnknownPlan(plan_id)
    return PLANS_CATALOG[plan_id]


def limit_for(plan_id) -> int:
    return get_plan(plan_id).credit_limit


def price_for(plan_id) -> int:
    return get_plan(plan_id).monthly_price_minor_units


def list_plans() -> list[Plan]:
    return list(PLANS_CATALOG.values())
