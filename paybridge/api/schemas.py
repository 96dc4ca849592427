"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class InitiatePaymentRequest(BaseModel):
    """Request schema for initiating a payment."""

    user_id: Optional[str] = Field(default=None, max_length=255, description="Paying user")
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2, description="Amount in major units")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO-4217 currency code (e.g., KES)")
    method: str = Field(..., min_length=1, description="Payment method: card_bank, mpesa or airtel")
    order_id: Optional[str] = Field(default=None, max_length=255, description="Order funded by this payment")
    description: Optional[str] = Field(default=None, max_length=255, description="Shown to the payer")
    phone_number: Optional[str] = Field(default=None, max_length=32, description="Payer MSISDN for mobile money")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    @field_validator("method")
    @classmethod
    def normalise_method(cls, v: str) -> str:
        return v.strip().lower()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user_123",
                    "amount": "1000.00",
                    "currency": "KES",
                    "method": "mpesa",
                    "order_id": "order_123",
                    "phone_number": "0712345678",
                }
            ]
        }
    }


class InitiatePaymentResponse(BaseModel):
    """Response schema for payment initiation."""

    transaction_id: str = Field(..., description="Generated transaction id")
    status: str = Field(..., description="Always pending at initiation")
    provider: str = Field(..., description="Provider handling the payment")
    redirect_url: Optional[str] = Field(default=None, description="Where the payer completes payment")
    reference_id: Optional[str] = Field(default=None, description="Provider tracking id")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction_id": "txn_4f1c2d3e4b5a69788796a5b4c3d2e1f0",
                    "status": "pending",
                    "provider": "mpesa",
                    "redirect_url": None,
                    "reference_id": "ws_CO_191020261012345678",
                }
            ]
        }
    }


class TransactionStatusResponse(BaseModel):
    """Response schema for a transaction status query."""

    transaction_id: str
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    provider: str
    status: str
    amount: Decimal
    currency: str
    reference_id: Optional[str] = None
    redirect_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries."""

    ok: bool = Field(..., description="Delivery acknowledged")
    status: str = Field(..., description="Stored transaction status after processing")
    transaction_id: Optional[str] = None
    duplicate: bool = Field(default=False, description="Delivery was a replay of an applied outcome")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = Field(default=None, description="Status message")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
