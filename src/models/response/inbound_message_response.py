from typing import Optional
from pydantic import BaseModel, Field


class InboundMessageResponse(BaseModel):
    """
    Response model for inbound message submission.
    Processing happens in the background; the outcome is only visible in the
    message log and the session store.
    """
    status: str = Field(..., description="accepted or rejected")
    message: str = Field(..., description="Human-readable message")
    error_details: Optional[str] = Field(None, description="Error details if status is rejected")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "accepted",
                "message": "Message queued for flow processing",
                "error_details": None
            }
        }
