from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Literal
from enum import Enum

from models.session_data import SessionData
from models.channel_config_data import ChannelContext


class ExecutionState(str, Enum):
    AWAITING_SESSION = "awaiting_session"
    RESUMING = "resuming"
    EXECUTING = "executing"
    FALLBACK = "fallback"
    ERROR = "error"
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"  # Delayed resume found the session elsewhere


class StepDecision(BaseModel):
    """
    What to do after a step: advance to another step (None = flow ended)
    or suspend the session on a step.
    """
    action: Literal["advance", "suspend"]
    step_id: Optional[str] = None

    @classmethod
    def advance(cls, step_id: Optional[str]) -> "StepDecision":
        return cls(action="advance", step_id=step_id)

    @classmethod
    def suspend(cls, step_id: str) -> "StepDecision":
        return cls(action="suspend", step_id=step_id)

    @property
    def is_suspend(self) -> bool:
        return self.action == "suspend"


class SendResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class CallbackResult(BaseModel):
    success: bool
    status: Optional[int] = None
    body: Optional[Any] = None
    error: Optional[str] = None
    elapsed_ms: int = 0


class SideEffectResult(BaseModel):
    kind: Literal["send_message", "external_call", "delay"]
    success: bool
    detail: Optional[str] = None


class StepOutcome(BaseModel):
    decision: StepDecision
    side_effect: Optional[SideEffectResult] = None


class ExecutionContext(BaseModel):
    """
    Everything a step executor may read. session_data is the working copy
    mutated during the loop and merged into the stored session at the end.
    """
    contact_address: str
    current_message: str = ""
    session_data: Dict[str, Any] = Field(default_factory=dict)
    session: SessionData
    channel_context: ChannelContext
    pending_delay_id: Optional[str] = None  # Timer to record on the session when it suspends


class InvocationResult(BaseModel):
    """
    Outcome of one engine invocation. The HTTP caller ignores it; tests and
    the scheduler read it.
    """
    state: ExecutionState
    contact_address: str
    flow_id: Optional[str] = None
    current_step_id: Optional[str] = None
    steps_executed: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
