"""
Session Service
Loads, bootstraps and persists per-contact execution state.
"""
import asyncio
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB
from exceptions.flow_exception import FlowDBException, SessionPersistFailedException
from models.flow_data import FlowData
from models.session_data import SessionData, SessionError, NO_FLOW_SESSION
from services.contact_lock_service import ContactLockService

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def _tokenize(text: str) -> List[str]:
    return _TOKEN_PATTERN.findall((text or "").lower())


def keyword_matches(keyword: str, text: str) -> bool:
    """
    Case-insensitive token match: every token of the keyword must appear
    contiguously in the message.
    """
    keyword_tokens = _tokenize(keyword)
    if not keyword_tokens:
        return False
    message_tokens = _tokenize(text)
    width = len(keyword_tokens)
    for start in range(len(message_tokens) - width + 1):
        if message_tokens[start:start + width] == keyword_tokens:
            return True
    return False


class SessionService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        flow_db: FlowDB,
        contact_lock_service: ContactLockService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.contact_lock_service = contact_lock_service
        self.session_ttl_seconds = int(environment_utils.get_env_variable("SESSION_TTL_SECONDS"))
        self.persist_retries = max(1, int(environment_utils.get_env_variable("SESSION_PERSIST_RETRIES")))

    def hold(self, contact_address: str):
        """
        Async context manager serializing all work on one contact.
        """
        return self.contact_lock_service.hold(contact_address)

    def is_stale(self, session: SessionData, now: Optional[datetime] = None) -> bool:
        if session.is_no_flow() or session.status != "active":
            return True
        now = now or datetime.utcnow()
        return now - session.last_activity > timedelta(seconds=self.session_ttl_seconds)

    async def get_session(self, contact_address: str) -> Optional[SessionData]:
        return await self.flow_db.get_session(contact_address)

    def match_trigger(self, flows: List[FlowData], inbound_text: str) -> Optional[FlowData]:
        matched = [
            flow for flow in flows
            if any(keyword_matches(keyword, inbound_text) for keyword in flow.trigger_keywords)
        ]
        if not matched:
            return None
        return min(matched, key=lambda flow: flow.id)

    async def load_or_create(self, contact_address: str, inbound_text: str, tenant_id: str) -> SessionData:
        """
        Return the contact's live session, or bootstrap a new one from the
        tenant's trigger keywords. Returns NO_FLOW_SESSION, persisting nothing,
        when no session can be resumed and no trigger matches.
        """
        existing = await self.flow_db.get_session(contact_address)
        if existing is not None and not self.is_stale(existing):
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Resuming session of {contact_address} in flow {existing.flow_id} at step {existing.current_step_id}"
            )
            return existing

        flows = await self.flow_db.get_active_flows_with_triggers(tenant_id)
        flow = self.match_trigger(flows, inbound_text)
        if flow is None:
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] No trigger matched for {contact_address} among {len(flows)} active flow(s) of tenant {tenant_id}"
            )
            return NO_FLOW_SESSION

        session = SessionData(
            contact_address=contact_address,
            tenant_id=tenant_id,
            flow_id=flow.id,
            current_step_id=None,
            session_data={},
            status="active",
            version=existing.version + 1 if existing is not None else 0
        )
        if existing is not None:
            session.created_at = existing.created_at

        saved = await self.flow_db.upsert_session(session)
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Started flow {flow.id} ({flow.name}) for {contact_address}"
        )
        return saved

    async def advance(
        self,
        session: SessionData,
        next_step_id: Optional[str],
        updated_session_data: Optional[Dict[str, Any]] = None,
        status: str = "active",
        last_error: Optional[SessionError] = None,
        pending_delay_id: Optional[str] = None
    ) -> SessionData:
        """
        Persist the outcome of one invocation. The write only applies when the
        stored version still equals session.version. pending_delay_id is the
        timer the session waits on, cleared unless given.
        """
        merged = dict(session.session_data)
        merged.update(updated_session_data or {})
        partial = {
            "current_step_id": next_step_id,
            "session_data": merged,
            "status": status,
            "last_error": last_error.model_dump() if last_error else None,
            "pending_delay_id": pending_delay_id,
            "last_activity": datetime.utcnow()
        }

        last_exception: Optional[Exception] = None
        for attempt in range(1, self.persist_retries + 1):
            try:
                updated = await self.flow_db.update_session(
                    session.contact_address,
                    partial,
                    expected_version=session.version
                )
            except FlowDBException as e:
                last_exception = e
                self.log_util.warning(
                    service_name="SessionService",
                    message=f"[SESSION] Persist attempt {attempt}/{self.persist_retries} failed for {session.contact_address}: {e.message}"
                )
                if attempt < self.persist_retries:
                    await asyncio.sleep(0.05 * attempt)
                continue

            if updated is None:
                raise SessionPersistFailedException(
                    message=f"Session of {session.contact_address} was modified concurrently (expected version {session.version})"
                )
            return updated

        raise SessionPersistFailedException(
            message=f"Could not persist session of {session.contact_address} after {self.persist_retries} attempt(s): {last_exception}"
        )
