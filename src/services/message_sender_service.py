"""
Message Sender Service
Delivers one text message to one contact through the WhatsApp Cloud API.
"""
import httpx
from typing import Optional

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from models.channel_config_data import SenderCredentials
from models.execution_data import SendResult


class MessageSenderService:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.api_base_url = str(environment_utils.get_env_variable("WHATSAPP_API_BASE_URL")).rstrip("/")
        self.timeout_seconds = float(environment_utils.get_env_variable("SEND_TIMEOUT_SECONDS"))

    async def send(
        self,
        credentials: Optional[SenderCredentials],
        contact_address: str,
        text: str
    ) -> SendResult:
        """
        Send a text message. Never raises: every failure is returned as an
        unsuccessful SendResult.
        """
        if credentials is None:
            self.log_util.warning(
                service_name="MessageSenderService",
                message=f"[SEND] No sender credentials, message to {contact_address} not sent"
            )
            return SendResult(success=False, error="No sender credentials configured")

        url = f"{self.api_base_url}/{credentials.phone_number_id}/messages"
        request_body = {
            "messaging_product": "whatsapp",
            "to": contact_address,
            "type": "text",
            "text": {"body": text}
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    url,
                    json=request_body,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {credentials.access_token}"
                    }
                )

            if response.status_code in (200, 201):
                response_data = response.json()
                messages = response_data.get("messages") or [{}]
                provider_message_id = messages[0].get("id")
                self.log_util.info(
                    service_name="MessageSenderService",
                    message=f"[SEND] Message sent to {contact_address}, provider id {provider_message_id}"
                )
                return SendResult(success=True, provider_message_id=provider_message_id)

            error_text = response.text[:500]
            self.log_util.error(
                service_name="MessageSenderService",
                message=f"[SEND] Provider rejected message to {contact_address}: {response.status_code} - {error_text}"
            )
            return SendResult(success=False, error=f"HTTP {response.status_code}: {error_text}")

        except httpx.TimeoutException:
            self.log_util.error(
                service_name="MessageSenderService",
                message=f"[SEND] Timeout after {self.timeout_seconds}s sending to {contact_address}"
            )
            return SendResult(success=False, error="Timeout")
        except (httpx.HTTPError, ValueError) as e:
            self.log_util.error(
                service_name="MessageSenderService",
                message=f"[SEND] Error sending to {contact_address}: {str(e)}"
            )
            return SendResult(success=False, error=str(e))
