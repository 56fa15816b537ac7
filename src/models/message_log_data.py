from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class MessageLogData(BaseModel):
    """
    Append-only audit row for every inbound and outbound text message.
    Written by the engine, never read by it.
    """
    id: Optional[str] = None  # MongoDB _id
    tenant_id: Optional[str] = Field(None, description="Tenant that owns the conversation")
    flow_id: Optional[str] = Field(None, description="Flow the message belongs to, None for fallback replies")
    contact_address: str = Field(..., description="External contact address")
    direction: str = Field(..., description="incoming or outgoing")
    body: str = Field(default="", description="Message text")
    message_type: str = Field(default="text")
    status: str = Field(..., description="received, sent, failed")
    provider_message_id: Optional[str] = Field(None, description="Message ID returned by the provider on send")
    created_at: datetime = Field(default_factory=datetime.utcnow)
