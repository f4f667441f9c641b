"""
Request bodies for the subscription, usage and admin endpoints.

Field names follow the frontend's camelCase payloads.
"""
from pydantic import BaseModel, Field
from typing import Optional


class CheckoutRequest(BaseModel):
    """Body for POST /subscription/checkout"""
    planType: Optional[str] = Field(None, description="Plan id (basic|pro|enterprise)")

    class Config:
        json_schema_extra = {"example": {"planType": "basic"}}


class SyncRequest(BaseModel):
    """Body for POST /subscription/sync"""
    sessionId: Optional[str] = Field(None, description="Checkout session id from the success redirect")


class UpdatePlanRequest(BaseModel):
    """Body for POST /subscription/update"""
    newPlanType: Optional[str] = Field(None, description="Target plan id")


class AdminGrantRequest(BaseModel):
    """Body for POST /admin/subscription/grant"""
    userId: Optional[int] = Field(None, description="User receiving the plan")
    planType: Optional[str] = Field(None, description="Plan id to grant")

    class Config:
        json_schema_extra = {"example": {"userId": 42, "planType": "pro"}}


class AdminTerminateRequest(BaseModel):
    """Body for POST /admin/subscription/terminate"""
    userId: Optional[int] = Field(None, description="User whose subscription is terminated")
