"""
Flow Engine Service
Drives a contact's session through its flow, one bounded invocation at a time.

An invocation moves through AWAITING_SESSION -> RESUMING -> EXECUTING and
ends in exactly one of FALLBACK, ERROR, COMPLETED or SUSPENDED. A delayed
resume whose session has moved on ends in SKIPPED.
"""
from typing import Optional

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB
from exceptions.flow_exception import (
    FlowNotFoundException,
    FlowValidationException,
    GraphMalformedException,
    LoopBoundExceededException,
    StepExecutionFailedException
)
from models.channel_config_data import ChannelContext
from models.delay_data import DelayData
from models.execution_data import ExecutionContext, ExecutionState, InvocationResult, StepOutcome
from models.session_data import SessionData, SessionError
from services.audit_service import AuditService
from services.graph_navigator_service import GraphNavigatorService
from services.message_sender_service import MessageSenderService
from services.session_service import SessionService
from services.step_executor_service import StepExecutorService

INBOUND = "inbound"
DELAY_COMPLETE = "delay_complete"


class FlowEngineService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        flow_db: FlowDB,
        session_service: SessionService,
        graph_navigator_service: GraphNavigatorService,
        step_executor_service: StepExecutorService,
        message_sender_service: MessageSenderService,
        audit_service: AuditService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_service = session_service
        self.graph_navigator_service = graph_navigator_service
        self.step_executor_service = step_executor_service
        self.message_sender_service = message_sender_service
        self.audit_service = audit_service
        self.max_steps = int(environment_utils.get_env_variable("MAX_STEPS_PER_INVOCATION"))
        self.fallback_message = str(environment_utils.get_env_variable("FALLBACK_MESSAGE") or "")

    async def handle_inbound_message(
        self,
        contact_address: str,
        text: str,
        channel_context: ChannelContext
    ) -> InvocationResult:
        """
        Entry point for one inbound text message.

        Raises:
            FlowDBException: the session could not be read or created
            SessionPersistFailedException: the loop ran but its outcome could not be stored
        """
        self.log_util.info(
            service_name="FlowEngineService",
            message=f"[ENGINE] Inbound message from {contact_address} for tenant {channel_context.tenant_id}"
        )
        async with self.session_service.hold(contact_address):
            session = await self.session_service.load_or_create(contact_address, text, channel_context.tenant_id)
            if session.is_no_flow():
                return await self._fallback(contact_address, channel_context)

            await self.audit_service.append(
                direction="incoming",
                contact_address=contact_address,
                tenant_id=channel_context.tenant_id,
                flow_id=session.flow_id,
                text=text,
                status="received"
            )
            return await self._run(session, text, channel_context, mode=INBOUND)

    async def resume_delayed(self, delay: DelayData) -> InvocationResult:
        """
        Entry point for a delay timer that fired. A no-op unless the contact's
        session is still parked on the delay step that scheduled it and still
        waits on this very timer.
        """
        async with self.session_service.hold(delay.contact_address):
            session = await self.session_service.get_session(delay.contact_address)
            if (
                session is None
                or session.status != "active"
                or session.flow_id != delay.flow_id
                or session.current_step_id != delay.delay_step_id
                or session.pending_delay_id != delay.id
            ):
                self.log_util.info(
                    service_name="FlowEngineService",
                    message=f"[DELAY] Session of {delay.contact_address} no longer waits on delay {delay.id} at step {delay.delay_step_id}, skipping resume"
                )
                return InvocationResult(
                    state=ExecutionState.SKIPPED,
                    contact_address=delay.contact_address,
                    flow_id=session.flow_id if session else None,
                    current_step_id=session.current_step_id if session else None
                )

            tenant_id = delay.tenant_id or session.tenant_id
            channel_context = await self._channel_context_for_tenant(tenant_id)
            self.log_util.info(
                service_name="FlowEngineService",
                message=f"[DELAY] Resuming {delay.contact_address} after delay step {delay.delay_step_id}"
            )
            return await self._run(session, "", channel_context, mode=DELAY_COMPLETE)

    async def _channel_context_for_tenant(self, tenant_id: Optional[str]) -> ChannelContext:
        config = await self.flow_db.get_channel_config_by_tenant(tenant_id) if tenant_id else None
        if config is None:
            self.log_util.warning(
                service_name="FlowEngineService",
                message=f"[ENGINE] No active channel configuration for tenant {tenant_id}, messages cannot be delivered"
            )
            return ChannelContext(tenant_id=tenant_id or "", credentials=None)
        return ChannelContext.from_config(config)

    async def _fallback(self, contact_address: str, channel_context: ChannelContext) -> InvocationResult:
        """
        No session and no trigger matched: optionally send the fallback text.
        Nothing is persisted.
        """
        self.log_util.info(
            service_name="FlowEngineService",
            message=f"[ENGINE] No flow for {contact_address}, ending in fallback"
        )
        if self.fallback_message and channel_context.credentials is not None:
            result = await self.message_sender_service.send(
                channel_context.credentials,
                contact_address,
                self.fallback_message
            )
            await self.audit_service.append(
                direction="outgoing",
                contact_address=contact_address,
                tenant_id=channel_context.tenant_id,
                flow_id=None,
                text=self.fallback_message,
                status="sent" if result.success else "failed",
                provider_message_id=result.provider_message_id
            )
        return InvocationResult(state=ExecutionState.FALLBACK, contact_address=contact_address)

    async def _run(
        self,
        session: SessionData,
        current_message: str,
        channel_context: ChannelContext,
        mode: str
    ) -> InvocationResult:
        context = ExecutionContext(
            contact_address=session.contact_address,
            current_message=current_message,
            session_data=dict(session.session_data),
            session=session,
            channel_context=channel_context
        )
        steps_executed = 0
        step_id: Optional[str] = session.current_step_id

        try:
            # RESUMING
            graph = await self.graph_navigator_service.load_graph(session.flow_id)
            if session.current_step_id is None:
                step_id = graph.entry_step()
                outcome = await self.step_executor_service.execute(graph.get_step(step_id), context, graph)
            elif mode == DELAY_COMPLETE:
                outcome = self.step_executor_service.complete_delay(graph.get_step(step_id), graph)
            else:
                outcome = await self.step_executor_service.resume(graph.get_step(step_id), context, graph)
            steps_executed = 1

            # EXECUTING
            while not outcome.decision.is_suspend:
                step_id = outcome.decision.step_id
                if step_id is None:
                    return await self._complete(session, context, steps_executed)
                if steps_executed >= self.max_steps:
                    raise LoopBoundExceededException(
                        message=f"Executed {steps_executed} steps without suspending or completing",
                        step_id=step_id
                    )
                outcome = await self.step_executor_service.execute(graph.get_step(step_id), context, graph)
                steps_executed += 1

            return await self._suspend(session, context, outcome, steps_executed)

        except FlowNotFoundException as e:
            return await self._error(session, context, "flow_not_found", e.message, step_id, steps_executed)
        except FlowValidationException as e:
            return await self._error(session, context, "flow_invalid", e.message, step_id, steps_executed)
        except GraphMalformedException as e:
            return await self._error(session, context, "graph_malformed", e.message, e.step_id or step_id, steps_executed)
        except LoopBoundExceededException as e:
            return await self._error(session, context, "loop_bound_exceeded", e.message, e.step_id, steps_executed)
        except StepExecutionFailedException as e:
            return await self._error(session, context, "step_execution_failed", e.message, e.step_id or step_id, steps_executed)

    async def _complete(self, session: SessionData, context: ExecutionContext, steps_executed: int) -> InvocationResult:
        await self.session_service.advance(session, None, context.session_data, status="completed")
        self.log_util.info(
            service_name="FlowEngineService",
            message=f"[ENGINE] Flow {session.flow_id} completed for {session.contact_address} after {steps_executed} step(s)"
        )
        return InvocationResult(
            state=ExecutionState.COMPLETED,
            contact_address=session.contact_address,
            flow_id=session.flow_id,
            current_step_id=None,
            steps_executed=steps_executed
        )

    async def _suspend(
        self,
        session: SessionData,
        context: ExecutionContext,
        outcome: StepOutcome,
        steps_executed: int
    ) -> InvocationResult:
        step_id = outcome.decision.step_id
        await self.session_service.advance(
            session,
            step_id,
            context.session_data,
            status="active",
            pending_delay_id=context.pending_delay_id
        )
        self.log_util.info(
            service_name="FlowEngineService",
            message=f"[ENGINE] {session.contact_address} suspended at step {step_id} of flow {session.flow_id}"
        )
        return InvocationResult(
            state=ExecutionState.SUSPENDED,
            contact_address=session.contact_address,
            flow_id=session.flow_id,
            current_step_id=step_id,
            steps_executed=steps_executed
        )

    async def _error(
        self,
        session: SessionData,
        context: ExecutionContext,
        kind: str,
        message: str,
        step_id: Optional[str],
        steps_executed: int
    ) -> InvocationResult:
        self.log_util.error(
            service_name="FlowEngineService",
            message=f"[ENGINE] {kind} in flow {session.flow_id} for {session.contact_address} at step {step_id}: {message}"
        )
        await self.session_service.advance(
            session,
            None,
            context.session_data,
            status="error",
            last_error=SessionError(kind=kind, message=message, step_id=step_id)
        )
        return InvocationResult(
            state=ExecutionState.ERROR,
            contact_address=session.contact_address,
            flow_id=session.flow_id,
            current_step_id=None,
            steps_executed=steps_executed,
            error_kind=kind,
            error_message=message
        )
