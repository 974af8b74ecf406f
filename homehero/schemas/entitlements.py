from datetime import datetime

from pydantic import BaseModel, Field


class EntitlementsOut(BaseModel):
    provider_id: int
    verification_badge: bool = False
    featured_zip_codes: list[str] = Field(default_factory=list)
    lead_credits: int = 0
    updated_at: datetime | None = None
