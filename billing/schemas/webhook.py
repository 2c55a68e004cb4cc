"""Payment gateway webhook payloads."""

from pydantic import BaseModel, ConfigDict, Field


class GatewayFailure(BaseModel):
    code: str | None = None
    message: str | None = None


class GatewayEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    payment_key: str | None = Field(None, alias="paymentKey")
    order_id: str | None = Field(None, alias="orderId")
    status: str | None = None
    amount: int | None = None
    method: str | None = None
    approved_at: str | None = Field(None, alias="approvedAt")
    billing_key: str | None = Field(None, alias="billingKey")
    customer_key: str | None = Field(None, alias="customerKey")
    failure: GatewayFailure | None = None


class GatewayWebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(alias="eventType")
    timestamp: str | None = None
    data: GatewayEventData
