from typing import Optional

from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from models.message_log_data import MessageLogData


class AuditService:
    """
    Append-only message log. Failures are logged and never interrupt a conversation.
    """

    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    async def append(
        self,
        direction: str,
        contact_address: str,
        tenant_id: Optional[str],
        flow_id: Optional[str],
        text: str,
        status: str,
        provider_message_id: Optional[str] = None
    ) -> Optional[MessageLogData]:
        message_log = MessageLogData(
            tenant_id=tenant_id,
            flow_id=flow_id,
            contact_address=contact_address,
            direction=direction,
            body=text or "",
            status=status,
            provider_message_id=provider_message_id
        )
        saved = await self.flow_db.save_message_log(message_log)
        if saved is None:
            self.log_util.warning(
                service_name="AuditService",
                message=f"[AUDIT] Could not record {direction} message for {contact_address} (status: {status})"
            )
        return saved
