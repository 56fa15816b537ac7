from typing import Optional
from pydantic import BaseModel, Field


class InboundMessageRequest(BaseModel):
    """
    Request model for channel-agnostic inbound messages.
    The tenant is resolved from the receiving phone number ID.
    """
    contact_address: str = Field(..., description="Sender address (phone number)")
    text: str = Field(default="", description="Message text")
    phone_number_id: str = Field(..., description="Business phone number ID the message was received on")

    class Config:
        json_schema_extra = {
            "example": {
                "contact_address": "15551234567",
                "text": "hello",
                "phone_number_id": "109876543210"
            }
        }
