"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    ChargeResponse,
    CreateChargeRequest,
    PaymentProfileRequest,
    PayoutResponse,
    TransactionResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateChargeRequest",
    "ChargeResponse",
    "TransactionResponse",
    "PayoutResponse",
    "PaymentProfileRequest",
]
