"""
Delay Scheduler Service
Stores durable timers for delay steps and resumes sessions when they expire.
"""
import asyncio
import traceback
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime, timedelta
from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from models.delay_data import DelayData
from models.flow_data import FlowStep
from models.session_data import SessionData

if TYPE_CHECKING:
    from services.flow_engine_service import FlowEngineService
    from models.execution_data import InvocationResult


class DelaySchedulerService:
    """
    Background service that polls delay records and hands every expired one
    to the flow engine exactly once.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        flow_engine_service: Optional["FlowEngineService"] = None,
        check_interval_seconds: float = 5
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_engine_service = flow_engine_service
        self.check_interval_seconds = check_interval_seconds
        self._running = False
        self._task = None

    def set_flow_engine_service(self, flow_engine_service: "FlowEngineService"):
        """
        Set the engine after construction (engine and scheduler depend on each other).
        """
        self.flow_engine_service = flow_engine_service

    async def schedule(
        self,
        session: SessionData,
        step: FlowStep,
        delay_ms: int,
        tenant_id: Optional[str] = None
    ) -> Optional[DelayData]:
        """
        Arrange one resume of the session after delay_ms. Older pending timers
        of the contact are cancelled first.
        """
        cancelled = await self.flow_db.cancel_pending_delays(session.contact_address)
        if cancelled:
            self.log_util.info(
                service_name="DelaySchedulerService",
                message=f"[DELAY] Replaced {cancelled} pending timer(s) of {session.contact_address}"
            )

        started_at = datetime.utcnow()
        delay = DelayData(
            contact_address=session.contact_address,
            tenant_id=tenant_id or session.tenant_id,
            flow_id=session.flow_id,
            delay_step_id=step.id,
            delay_ms=delay_ms,
            delay_started_at=started_at,
            delay_completes_at=started_at + timedelta(milliseconds=delay_ms)
        )
        saved = await self.flow_db.save_delay(delay)
        if saved is None:
            self.log_util.error(
                service_name="DelaySchedulerService",
                message=f"[DELAY] Could not store timer for {session.contact_address} at step {step.id}"
            )
            return None

        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"[DELAY] Scheduled resume of {session.contact_address} at step {step.id} for {saved.delay_completes_at.isoformat()}"
        )
        return saved

    async def cancel_pending(self, contact_address: str) -> int:
        return await self.flow_db.cancel_pending_delays(contact_address)

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="DelaySchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Delay scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="DelaySchedulerService",
            message="Delay scheduler stopped"
        )

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.fire_due_delays()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def fire_due_delays(self, now: Optional[datetime] = None) -> List["InvocationResult"]:
        """
        Claim every expired timer and resume its session. A timer that another
        worker already claimed is skipped.
        """
        if self.flow_engine_service is None:
            self.log_util.error(
                service_name="DelaySchedulerService",
                message="FlowEngineService not initialized, cannot resume delayed sessions"
            )
            return []

        pending_delays = await self.flow_db.get_pending_delays(now)
        if not pending_delays:
            return []

        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Found {len(pending_delays)} expired delay(s) to process"
        )

        results = []
        for delay in pending_delays:
            if not await self.flow_db.claim_delay(delay.id):
                continue
            try:
                result = await self.flow_engine_service.resume_delayed(delay)
                results.append(result)
                self.log_util.info(
                    service_name="DelaySchedulerService",
                    message=f"Delay {delay.id} for {delay.contact_address} ended in {result.state.value}"
                )
            except Exception as e:
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Error processing delay {delay.id}: {str(e)}"
                )
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
        return results
