from .billing import CheckoutRequest, SyncRequest, UpdatePlanRequest, AdminGrantRequest, AdminTerminateRequest
