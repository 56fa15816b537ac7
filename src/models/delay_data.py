from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class DelayData(BaseModel):
    """
    Model for storing delay information when a delay step is executed.
    Used by the background scheduler to resume the session once the delay expires.
    """
    id: Optional[str] = None  # MongoDB _id
    contact_address: str = Field(..., description="Contact the session belongs to")
    tenant_id: Optional[str] = Field(None, description="Tenant that owns the flow")
    flow_id: str = Field(..., description="Flow ID where delay step exists")
    delay_step_id: str = Field(..., description="Delay step ID")
    delay_ms: int = Field(..., description="Delay duration in milliseconds")
    delay_started_at: datetime = Field(default_factory=datetime.utcnow, description="When delay started")
    delay_completes_at: datetime = Field(..., description="When delay should complete (delay_started_at + delay_ms)")
    processed: bool = Field(default=False, description="Whether the resume has been claimed or cancelled")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when delay record was created")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when delay record was last updated")
