from typing import Literal

from pydantic import BaseModel, ConfigDict

AddonTypeName = Literal["LEAD_PACK", "VERIFICATION_BADGE", "FEATURED_ZIP"]
PurchaseStatusName = Literal["PENDING", "SUCCEEDED", "FAILED"]


class AddonPurchaseRequest(BaseModel):
    # Older clients send camelCase keys or the legacy ``type`` shape; those pass through as extras.
    model_config = ConfigDict(extra="allow")

    addon_type: str | None = None
    pack_size: int | None = None
    zip_codes: list[str] | None = None


class AddonPurchaseOut(BaseModel):
    purchase_id: str
    payment_intent_id: str
    client_secret: str | None = None
    addon_type: AddonTypeName
    amount_cents: int
    currency: str


class ConfirmationOut(BaseModel):
    payment_intent_id: str
    status: PurchaseStatusName
    reconcile_job_id: int | None = None


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    status: Literal["processed", "duplicate", "ignored"]
    result: str | None = None
