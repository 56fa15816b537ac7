from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class CallbackData(BaseModel):
    """
    Outbound HTTP callback configured by a tenant. Addressable by its id alone.
    """
    id: Optional[str] = None  # MongoDB _id
    tenant_id: str
    flow_id: Optional[str] = None
    name: str
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CallbackLogData(BaseModel):
    """
    One row per callback invocation, success or failure.
    """
    id: Optional[str] = None  # MongoDB _id
    callback_id: str
    request_payload: Dict[str, Any] = Field(default_factory=dict)
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    elapsed_ms: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
