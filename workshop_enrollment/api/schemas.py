"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class CustomerSchema(BaseModel):
    """Customer identity supplied with an enrollment request."""

    name: str = Field(..., min_length=1, max_length=255, description="Full name")
    email: str = Field(..., max_length=255, description="Email address")
    phone: str = Field(default="", max_length=50, description="Phone number")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate and normalise the email address."""
        if "@" not in v:
            raise ValueError("Email must be a valid address")
        return v.strip().lower()


class EnrollRequest(BaseModel):
    """Request schema for enrolling in a workshop."""

    workshop_id: int = Field(..., gt=0, description="Workshop identifier")
    pricing_option: Optional[str] = Field(default=None, description="Selected pricing option")
    customer: CustomerSchema

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "workshop_id": 42,
                    "pricing_option": "early_bird",
                    "customer": {
                        "name": "Ada Lovelace",
                        "email": "ada@example.com",
                        "phone": "+44 20 7946 0000",
                    },
                }
            ]
        }
    }


class EnrollResponse(BaseModel):
    """Response schema for an enrollment request."""

    status: str = Field(..., description="reserved, waitlisted or rejected")
    workshop_id: int = Field(..., description="Workshop identifier")
    enrollment_id: Optional[str] = Field(default=None, description="Pending enrollment ID")
    checkout_url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    payment_reference: Optional[str] = Field(default=None, description="Checkout session ID")
    waitlist_entry_id: Optional[str] = Field(default=None, description="Waitlist entry ID")
    position: Optional[int] = Field(default=None, description="Waitlist position")
    code: Optional[str] = Field(default=None, description="Rejection code")


class RefundRequest(BaseModel):
    """Request schema for refunding an enrollment."""

    enrollment_id: UUID = Field(..., description="Enrollment to refund")
    amount_cents: Optional[int] = Field(
        default=None, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(default=None, max_length=255, description="Refund reason")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"enrollment_id": "123e4567-e89b-12d3-a456-426614174000"},
                {
                    "enrollment_id": "123e4567-e89b-12d3-a456-426614174000",
                    "amount_cents": 500,
                    "reason": "requested_by_customer",
                },
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for a refund request."""

    status: str = Field(..., description="Refund outcome")
    enrollment_id: Optional[str] = Field(default=None, description="Enrollment ID")
    refund_reference: Optional[str] = Field(default=None, description="Stripe Refund ID")
    code: Optional[str] = Field(default=None, description="Error code when not successful")
    message: Optional[str] = Field(default=None, description="Status message")


class ClaimResponse(BaseModel):
    """Response schema for following a waitlist claim link."""

    status: str = Field(..., description="Claim outcome")
    workshop_id: int = Field(..., description="Workshop identifier")
    entry_id: Optional[str] = Field(default=None, description="Waitlist entry ID")
    position: Optional[int] = Field(default=None, description="Waitlist position")
    enrollment_id: Optional[str] = Field(default=None, description="Pending enrollment ID")
    checkout_url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    can_rejoin: bool = Field(default=False, description="Whether the waitlist is still open")
    code: Optional[str] = Field(default=None, description="Error code when not accepted")


class EnrollmentResponse(BaseModel):
    """Response schema for enrollment status."""

    id: str = Field(..., description="Enrollment ID")
    workshop_id: int = Field(..., description="Workshop identifier")
    status: str = Field(..., description="Enrollment status")
    amount_cents: int = Field(..., description="Amount in cents")
    currency: str = Field(..., description="Currency code")
    pricing_option: Optional[str] = Field(default=None, description="Pricing option")
    customer_name: str = Field(..., description="Customer name")
    customer_email: str = Field(..., description="Customer email")
    payment_reference: str = Field(..., description="Checkout session ID")
    refund_reference: Optional[str] = Field(default=None, description="Stripe Refund ID")
    refund_amount_cents: Optional[int] = Field(default=None, description="Refunded amount")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class AvailabilityResponse(BaseModel):
    """Response schema for workshop availability."""

    workshop_id: int = Field(..., description="Workshop identifier")
    capacity: int = Field(..., description="Seat capacity (0 = unlimited)")
    remaining: Union[int, str] = Field(..., description="Seats left, or 'unlimited'")
    waitlist_enabled: bool = Field(..., description="Whether full workshops accept a waitlist")
    waiting: int = Field(..., description="Entries waiting for a seat")


class WaitlistEntryResponse(BaseModel):
    """Response schema for a waitlist entry."""

    id: str = Field(..., description="Waitlist entry ID")
    workshop_id: int = Field(..., description="Workshop identifier")
    position: int = Field(..., description="Waitlist position")
    status: str = Field(..., description="Entry status")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = Field(default=None, description="Payment event ID")
    code: Optional[str] = Field(default=None, description="Error code when not applied")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Response schema for domain errors."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable message")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
