from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class ChannelConfigData(BaseModel):
    """
    WhatsApp Business API configuration of a tenant.
    Supplies sender credentials and maps an inbound phone number ID to its tenant.
    """
    id: Optional[str] = None  # MongoDB _id
    tenant_id: str
    app_id: Optional[str] = None
    phone_number_id: str = Field(..., description="Business phone number ID messages are sent from and received on")
    access_token: str
    verify_token: Optional[str] = None
    display_phone_number: Optional[str] = None
    business_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SenderCredentials(BaseModel):
    phone_number_id: str
    access_token: str


class ChannelContext(BaseModel):
    """
    What the engine knows about the channel an event arrived on.
    """
    tenant_id: str
    credentials: Optional[SenderCredentials] = None

    @classmethod
    def from_config(cls, config: ChannelConfigData) -> "ChannelContext":
        return cls(
            tenant_id=config.tenant_id,
            credentials=SenderCredentials(
                phone_number_id=config.phone_number_id,
                access_token=config.access_token
            )
        )
