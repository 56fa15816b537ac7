import traceback
from typing import Optional, Dict, Any

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import FlowException

# Services
from services.channel_message_adapter import ChannelMessageAdapter
from services.flow_engine_service import FlowEngineService

# Models
from models.channel_config_data import ChannelContext


class WebhookService:
    """
    Service for handling inbound channel webhooks.
    Resolves the tenant of each message and hands it to the flow engine.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        flow_db: FlowDB,
        flow_engine_service: FlowEngineService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_engine_service = flow_engine_service
        self.channel_adapter = ChannelMessageAdapter(log_util)
        self.verify_token = str(environment_utils.get_env_variable("WHATSAPP_VERIFY_TOKEN") or "")

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """
        Meta webhook verification handshake. Returns the challenge to echo,
        or None when the request must be rejected.
        """
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            self.log_util.info(service_name="WebhookService", message="WhatsApp webhook verified")
            return challenge or ""
        self.log_util.warning(
            service_name="WebhookService",
            message=f"WhatsApp webhook verification failed (mode: {mode})"
        )
        return None

    async def resolve_channel_context(self, phone_number_id: Optional[str]) -> Optional[ChannelContext]:
        if not phone_number_id:
            return None
        config = await self.flow_db.get_channel_config_by_phone_number_id(phone_number_id)
        if config is None:
            return None
        return ChannelContext.from_config(config)

    async def process_inbound_message(
        self,
        contact_address: str,
        text: str,
        phone_number_id: Optional[str]
    ) -> Dict[str, Any]:
        """
        Process one inbound text message end to end. Runs in the background,
        so failures are logged here and reported in the returned dict.
        """
        try:
            self.log_util.info(
                service_name="WebhookService",
                message=f"Received message from {contact_address} on phone number {phone_number_id}"
            )

            channel_context = await self.resolve_channel_context(phone_number_id)
            if channel_context is None:
                self.log_util.warning(
                    service_name="WebhookService",
                    message=f"No active channel configuration for phone number {phone_number_id}, message from {contact_address} ignored"
                )
                return {"status": "ignored", "message": "Unknown channel"}

            result = await self.flow_engine_service.handle_inbound_message(contact_address, text, channel_context)
            return {
                "status": "success",
                "state": result.state.value,
                "flow_id": result.flow_id,
                "current_step_id": result.current_step_id
            }

        except FlowException as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Error processing message from {contact_address}: {e.message}"
            )
            return {"status": "error", "message": e.message, "status_code": e.status_code}
        except Exception as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Unexpected error processing message from {contact_address}: {str(e)}"
            )
            self.log_util.error(
                service_name="WebhookService",
                message=f"Traceback: {traceback.format_exc()}"
            )
            return {"status": "error", "message": str(e)}

    async def process_whatsapp_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a WhatsApp Cloud API webhook. Messages are handled in order of
        appearance; delivery status updates are only logged.
        """
        for update in self.channel_adapter.extract_status_updates(payload):
            self.log_util.info(
                service_name="WebhookService",
                message=f"Message {update.provider_message_id} to {update.recipient} is {update.status}"
            )

        processed = 0
        for message in self.channel_adapter.normalize_whatsapp_payload(payload):
            await self.process_inbound_message(message.contact_address, message.text, message.phone_number_id)
            processed += 1
        return {"status": "success", "messages_processed": processed}
