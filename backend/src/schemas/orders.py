"""
Order Pydantic schemas for API request/response validation.

Request bodies for status changes keep the target status and driver location
loosely typed on purpose: the order core, not the request parser, decides
whether a status is a legal target and whether a location is usable, so
clients get the same error codes whichever layer they hit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.services.orders.enums import OrderStatus, PaymentStatus, TransactionType


class AddressRequest(BaseModel):
    """Pickup or drop-off address."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    address: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="Street address",
    )
    lat: Optional[float] = Field(None, ge=-90, le=90, description="Latitude")
    lng: Optional[float] = Field(None, ge=-180, le=180, description="Longitude")
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_phone: Optional[str] = Field(None, max_length=30)


class OrderCreateRequest(BaseModel):
    """Request schema for creating a new order."""

    model_config = ConfigDict(validate_assignment=True)

    pickup_location: AddressRequest = Field(..., description="Pickup address")
    dropoff_location: AddressRequest = Field(..., description="Drop-off address")
    price: Decimal = Field(
        ...,
        ge=0,
        max_digits=10,
        decimal_places=2,
        description="Price agreed with the customer",
    )
    package_details: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=1000, description="Order notes")
    payment_method: Optional[str] = Field(None, max_length=50)
    estimated_distance: Optional[Decimal] = Field(
        None, ge=0, max_digits=10, decimal_places=2, description="Kilometres"
    )
    estimated_duration: Optional[int] = Field(None, ge=0, description="Minutes")


class AcceptOrderRequest(BaseModel):
    """Driver claim of an available order."""

    driver_location: Optional[dict[str, Any]] = Field(
        None,
        description="Driver coordinates as {lat, lng}",
    )


class StatusTransitionRequest(BaseModel):
    """Driver request to move an order to its next status."""

    target_status: str = Field(..., min_length=1, max_length=32)
    driver_location: Optional[dict[str, Any]] = Field(
        None,
        description="Driver coordinates as {lat, lng}; required unless cancelling",
    )


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    driver_location: Optional[dict[str, Any]] = None


class PaymentStatusUpdateRequest(BaseModel):
    payment_status: PaymentStatus


class CommissionRateRequest(BaseModel):
    """New platform commission as a percentage."""

    commission_rate: Decimal = Field(..., max_digits=5, decimal_places=2)

    @field_validator("commission_rate")
    @classmethod
    def validate_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("Commission rate must be between 0 and 100")
        return v


class CommissionRateResponse(BaseModel):
    commission_rate: Decimal


class OrderResponse(BaseModel):
    """Complete order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    driver_id: Optional[UUID] = None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    pickup_location: dict[str, Any]
    dropoff_location: dict[str, Any]
    driver_location: Optional[dict[str, Any]] = None
    package_details: Optional[str] = None
    notes: Optional[str] = None
    estimated_distance: Optional[Decimal] = None
    estimated_duration: Optional[int] = None
    price: Decimal
    commission_rate: Optional[Decimal] = None
    platform_commission: Optional[Decimal] = None
    driver_payout: Optional[Decimal] = None
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[UUID] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    """Paginated order list response."""

    orders: list[OrderResponse]
    total: int
    skip: int
    limit: int


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    from_status: OrderStatus
    to_status: OrderStatus
    actor_id: UUID
    driver_location: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    created_at: datetime


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    driver_id: Optional[UUID] = None
    amount: Decimal
    transaction_type: TransactionType
    created_at: datetime
