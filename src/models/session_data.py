from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class SessionError(BaseModel):
    """
    Structural failure recorded on a session for the editor/dashboard.
    Never shown to the contact.
    """
    kind: str = Field(..., description="graph_malformed, loop_bound_exceeded, flow_not_found, flow_invalid, step_execution_failed")
    message: str
    step_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class SessionData(BaseModel):
    """
    Per-contact execution state. One record per contact address.
    flow_id and current_step_id are weak references: the flow or step may be
    deleted by the editor while the session is parked.
    """
    id: Optional[str] = None  # MongoDB _id
    contact_address: str = Field(..., description="External contact address (phone number)")
    tenant_id: Optional[str] = Field(None, description="Tenant that owns the session's flow")
    flow_id: Optional[str] = Field(None, description="Flow the contact is in, None when no flow matched yet")
    current_step_id: Optional[str] = Field(None, description="Step the session is parked at, None means at entry or finished")
    session_data: Dict[str, Any] = Field(default_factory=dict, description="Attributes accumulated across steps")
    status: str = Field(default="active", description="active, completed, error")
    pending_delay_id: Optional[str] = Field(None, description="Timer the session is parked on, only that timer may resume it")
    last_error: Optional[SessionError] = None
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=0, description="Incremented on every write, used for conditional updates")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_no_flow(self) -> bool:
        return self.flow_id is None


# Returned by SessionService.load_or_create when no trigger matched. Never persisted.
NO_FLOW_SESSION = SessionData(contact_address="", flow_id=None, status="no_flow")
