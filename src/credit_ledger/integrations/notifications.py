"""
Payment Notification Parsing

Turns a verified order webhook into the inputs of
PaymentConfirmationProcessor.process_confirmation().

Expected shape (only the fields used here):

    {
      "meta": {
        "event_name": "order_created",
        "custom_data": {"entity_id": "...", "entity_type": "user|organization",
                        "credit_purchase_id": "..."}
      },
      "data": {"id": "...", "attributes": {"status": "paid", "total": 1000}}
    }

`total` is in cents.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union
import uuid

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..errors import ValidationError
from ..persistence.models import EntityType

PAID_ORDER_EVENT = "order_created"
PAID_STATUS = "paid"

# Namespace for idempotency IDs derived from provider order IDs
ORDER_NAMESPACE = uuid.UUID("6f1c2a52-8d0e-4a43-9b55-3c1d8a7e0f21")


class CustomData(BaseModel):
    """Data attached to the checkout by us and echoed back by the provider."""
    entity_id: str = Field(..., min_length=1)
    entity_type: EntityType
    credit_purchase_id: Optional[str] = None


class NotificationMeta(BaseModel):
    event_name: str
    custom_data: CustomData


class OrderAttributes(BaseModel):
    status: str
    total: int = Field(..., description="Order total in cents")

    @field_validator("total", mode="before")
    @classmethod
    def _reject_non_integer_total(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("total must be an integer number of cents")
        return value


class OrderData(BaseModel):
    id: Union[str, int]
    attributes: OrderAttributes


class OrderNotification(BaseModel):
    """A paid-order webhook body."""
    meta: NotificationMeta
    data: OrderData


@dataclass
class PaymentNotification:
    """Verified, parsed inputs for crediting."""
    provider_order_id: str
    entity_id: str
    entity_type: EntityType
    idempotency_id: str
    amount: Decimal
    raw_payload: Dict[str, Any]


def derive_idempotency_id(provider_order_id: str) -> str:
    """Stable idempotency ID for an order that carried no purchase ID."""
    return str(uuid.uuid5(ORDER_NAMESPACE, provider_order_id))


def parse_payment_notification(payload: Any) -> Optional[PaymentNotification]:
    """
    Extract crediting inputs from a webhook body.

    Returns None for events that are not paid orders (other event names,
    unpaid statuses). Raises ValidationError when a paid order is malformed.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Notification payload must be a JSON object")

    meta = payload.get("meta")
    data = payload.get("data")
    if not isinstance(meta, dict) or not meta.get("event_name"):
        raise ValidationError("Notification is missing meta.event_name")

    if meta["event_name"] != PAID_ORDER_EVENT:
        return None

    attributes = data.get("attributes") if isinstance(data, dict) else None
    # A missing status falls through to validation and is rejected
    if isinstance(attributes, dict) and "status" in attributes and attributes["status"] != PAID_STATUS:
        return None

    try:
        notification = OrderNotification.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed payment notification: {e}") from e

    provider_order_id = str(notification.data.id).strip()
    if not provider_order_id:
        raise ValidationError("Notification is missing data.id")

    amount = (Decimal(notification.data.attributes.total) / 100).quantize(Decimal("0.01"))
    if amount <= 0:
        raise ValidationError(f"Order {provider_order_id} has a non-positive total")

    custom = notification.meta.custom_data
    return PaymentNotification(
        provider_order_id=provider_order_id,
        entity_id=custom.entity_id,
        entity_type=custom.entity_type,
        idempotency_id=custom.credit_purchase_id or derive_idempotency_id(provider_order_id),
        amount=amount,
        raw_payload=payload,
    )
