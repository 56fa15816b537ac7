"""
Step Executor Service
Executes one step of a flow and decides where the session goes next.
"""
from typing import Any, Dict, TYPE_CHECKING

from utils.log_utils import LogUtil
from exceptions.flow_exception import StepExecutionFailedException
from models.flow_data import FlowStep, SendMessageStep, BranchStep, ExternalCallStep, DelayStep
from models.execution_data import ExecutionContext, StepDecision, StepOutcome, SideEffectResult
from services.audit_service import AuditService
from services.message_sender_service import MessageSenderService
from services.callback_invoker_service import CallbackInvokerService
from services.condition_evaluator import evaluate_condition

if TYPE_CHECKING:
    from services.graph_navigator_service import FlowGraph
    from services.delay_scheduler_service import DelaySchedulerService


class StepExecutorService:
    """
    One handler per step kind. Side effects that fail are logged and recorded,
    the decision is returned regardless.
    """

    def __init__(
        self,
        log_util: LogUtil,
        message_sender_service: MessageSenderService,
        callback_invoker_service: CallbackInvokerService,
        audit_service: AuditService,
        delay_scheduler_service: "DelaySchedulerService"
    ):
        self.log_util = log_util
        self.message_sender_service = message_sender_service
        self.callback_invoker_service = callback_invoker_service
        self.audit_service = audit_service
        self.delay_scheduler_service = delay_scheduler_service

    async def execute(self, step: FlowStep, context: ExecutionContext, graph: "FlowGraph") -> StepOutcome:
        self.log_util.info(
            service_name="StepExecutorService",
            message=f"[EXECUTE] Step {step.id} ({step.kind}) of flow {graph.flow_id} for {context.contact_address}"
        )
        if isinstance(step, SendMessageStep):
            return await self._execute_send_message(step, context, graph)
        if isinstance(step, BranchStep):
            return self._execute_branch(step, context, graph)
        if isinstance(step, ExternalCallStep):
            return await self._execute_external_call(step, context, graph)
        if isinstance(step, DelayStep):
            return await self._execute_delay(step, context)
        raise StepExecutionFailedException(message=f"Unsupported step kind: {step.kind}", step_id=step.id)

    async def resume(self, step: FlowStep, context: ExecutionContext, graph: "FlowGraph") -> StepOutcome:
        """
        Continue a session that was suspended at step, driven by the inbound
        message in context. The suspended step's side effect is not repeated.
        """
        if isinstance(step, SendMessageStep):
            variable = step.config.responseVariable
            if variable:
                context.session_data[variable] = context.current_message
            self.log_util.info(
                service_name="StepExecutorService",
                message=f"[RESUME] Reply received at step {step.id} for {context.contact_address}"
                        + (f", stored as '{variable}'" if variable else "")
            )
            return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)))

        if isinstance(step, DelayStep):
            if not step.config.interruptible:
                self.log_util.info(
                    service_name="StepExecutorService",
                    message=f"[RESUME] Delay step {step.id} is not interruptible, {context.contact_address} keeps waiting"
                )
                context.pending_delay_id = context.session.pending_delay_id
                return StepOutcome(decision=StepDecision.suspend(step.id))

            cancelled = await self.delay_scheduler_service.cancel_pending(context.contact_address)
            self.log_util.info(
                service_name="StepExecutorService",
                message=f"[RESUME] Reply interrupted delay step {step.id} for {context.contact_address}, cancelled {cancelled} timer(s)"
            )
            return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)))

        # branch and external_call never suspend
        return await self.execute(step, context, graph)

    def complete_delay(self, step: FlowStep, graph: "FlowGraph") -> StepOutcome:
        """
        The timer of a delay step fired: move on to its successor.
        """
        return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)))

    async def _execute_send_message(self, step: SendMessageStep, context: ExecutionContext, graph: "FlowGraph") -> StepOutcome:
        result = await self.message_sender_service.send(
            context.channel_context.credentials,
            context.contact_address,
            step.config.text
        )
        await self.audit_service.append(
            direction="outgoing",
            contact_address=context.contact_address,
            tenant_id=context.channel_context.tenant_id,
            flow_id=graph.flow_id,
            text=step.config.text,
            status="sent" if result.success else "failed",
            provider_message_id=result.provider_message_id
        )
        if not result.success:
            self.log_util.warning(
                service_name="StepExecutorService",
                message=f"[SEND_MESSAGE] Delivery failed at step {step.id}: {result.error}"
            )

        side_effect = SideEffectResult(kind="send_message", success=result.success, detail=result.error)
        if step.config.waitForResponse:
            return StepOutcome(decision=StepDecision.suspend(step.id), side_effect=side_effect)
        return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)), side_effect=side_effect)

    def _execute_branch(self, step: BranchStep, context: ExecutionContext, graph: "FlowGraph") -> StepOutcome:
        for condition in step.config.conditions:
            if evaluate_condition(condition, context):
                self.log_util.info(
                    service_name="StepExecutorService",
                    message=f"[BRANCH] {condition.field} {condition.operator} '{condition.literal}' matched, going to {condition.targetStepId}"
                )
                return StepOutcome(decision=StepDecision.advance(self._checked_target(graph, condition.targetStepId)))

        if step.config.defaultTargetStepId:
            self.log_util.info(
                service_name="StepExecutorService",
                message=f"[BRANCH] No condition matched at {step.id}, using default {step.config.defaultTargetStepId}"
            )
            return StepOutcome(decision=StepDecision.advance(self._checked_target(graph, step.config.defaultTargetStepId)))

        return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)))

    def _checked_target(self, graph: "FlowGraph", target_step_id: str) -> str:
        # Raises GraphMalformedException for a target outside the flow
        return graph.get_step(target_step_id).id

    async def _execute_external_call(self, step: ExternalCallStep, context: ExecutionContext, graph: "FlowGraph") -> StepOutcome:
        payload: Dict[str, Any] = dict(step.config.payloadTemplate)
        payload.update({
            "contactAddress": context.contact_address,
            "currentMessage": context.current_message,
            "sessionData": dict(context.session_data)
        })
        result = await self.callback_invoker_service.invoke(step.config.callbackId, payload)
        if not result.success:
            self.log_util.warning(
                service_name="StepExecutorService",
                message=f"[EXTERNAL_CALL] Callback {step.config.callbackId} failed at step {step.id}: {result.error}"
            )
        side_effect = SideEffectResult(kind="external_call", success=result.success, detail=result.error)
        return StepOutcome(decision=StepDecision.advance(graph.successor(step.id)), side_effect=side_effect)

    async def _execute_delay(self, step: DelayStep, context: ExecutionContext) -> StepOutcome:
        delay = await self.delay_scheduler_service.schedule(
            session=context.session,
            step=step,
            delay_ms=step.config.delayMs,
            tenant_id=context.channel_context.tenant_id
        )
        context.pending_delay_id = delay.id if delay is not None else None
        side_effect = SideEffectResult(
            kind="delay",
            success=delay is not None,
            detail=None if delay is not None else "Delay record could not be stored"
        )
        return StepOutcome(decision=StepDecision.suspend(step.id), side_effect=side_effect)
