from pydantic import BaseModel, Field, Discriminator, ConfigDict
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime

class StepPosition(BaseModel):
    x: float = 0
    y: float = 0

# Step configurations, one per kind
class SendMessageConfig(BaseModel):
    text: str
    waitForResponse: bool = False
    responseVariable: Optional[str] = None  # Session data key that receives the reply when resumed

class BranchCondition(BaseModel):
    field: str
    operator: str
    literal: str = ""
    targetStepId: str

class BranchConfig(BaseModel):
    conditions: List[BranchCondition] = []
    defaultTargetStepId: Optional[str] = None

class ExternalCallConfig(BaseModel):
    callbackId: str
    payloadTemplate: Dict[str, Any] = {}

class DelayConfig(BaseModel):
    delayMs: int = Field(..., ge=0)
    interruptible: bool = True  # If true, an inbound reply ends the wait early

# Base FlowStep with common fields
class BaseFlowStep(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: str
    flow_id: str
    kind: str
    name: str = ""
    position: Optional[StepPosition] = None

class SendMessageStep(BaseFlowStep):
    kind: Literal["send_message"]
    config: SendMessageConfig

class BranchStep(BaseFlowStep):
    kind: Literal["branch"]
    config: BranchConfig

class ExternalCallStep(BaseFlowStep):
    kind: Literal["external_call"]
    config: ExternalCallConfig

class DelayStep(BaseFlowStep):
    kind: Literal["delay"]
    config: DelayConfig

# Union of all step kinds with discriminator
FlowStep = Annotated[
    Union[
        SendMessageStep,
        BranchStep,
        ExternalCallStep,
        DelayStep
    ],
    Discriminator("kind")
]

class FlowLink(BaseModel):
    id: str
    flow_id: str
    source_step_id: str
    target_step_id: str
    condition: Optional[str] = None  # Empty means unconditional "next"

    def is_unconditional(self) -> bool:
        return not self.condition

class FlowData(BaseModel):
    id: Optional[str] = None
    tenant_id: str
    name: str
    description: Optional[str] = None
    is_active: bool = False
    trigger_keywords: List[str] = []
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
