"""
Channel Message Adapter Service
Normalizes WhatsApp Cloud API webhook payloads to plain inbound text messages.
"""
from typing import Optional, Dict, Any, List
from utils.log_utils import LogUtil


class NormalizedMessage:
    """
    One inbound text message, independent of the channel payload it came in.
    """
    def __init__(
        self,
        contact_address: str,
        text: str,
        phone_number_id: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        contact_name: Optional[str] = None
    ):
        self.contact_address = contact_address
        self.text = text
        self.phone_number_id = phone_number_id
        self.provider_message_id = provider_message_id
        self.contact_name = contact_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_address": self.contact_address,
            "text": self.text,
            "phone_number_id": self.phone_number_id,
            "provider_message_id": self.provider_message_id,
            "contact_name": self.contact_name
        }


class StatusUpdate:
    """
    Delivery status reported by the provider for a message we sent.
    """
    def __init__(self, provider_message_id: str, status: str, recipient: Optional[str] = None):
        self.provider_message_id = provider_message_id
        self.status = status
        self.recipient = recipient


class ChannelMessageAdapter:
    """
    Parses the entry[].changes[] envelope of a WhatsApp webhook.
    Only text messages are handed on; other message types are logged and dropped.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def _message_changes(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if payload.get("object") not in (None, "whatsapp_business_account"):
            self.log_util.warning(
                service_name="ChannelMessageAdapter",
                message=f"Ignoring webhook for object '{payload.get('object')}'"
            )
            return []
        values = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") == "messages" and isinstance(change.get("value"), dict):
                    values.append(change["value"])
        return values

    def normalize_whatsapp_payload(self, payload: Dict[str, Any]) -> List[NormalizedMessage]:
        messages: List[NormalizedMessage] = []
        for value in self._message_changes(payload):
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            contact_names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                normalized = self._normalize_whatsapp_message(message, phone_number_id, contact_names)
                if normalized is not None:
                    messages.append(normalized)
        return messages

    def _normalize_whatsapp_message(
        self,
        message: Dict[str, Any],
        phone_number_id: Optional[str],
        contact_names: Dict[str, Optional[str]]
    ) -> Optional[NormalizedMessage]:
        """Normalize one WhatsApp message object"""
        sender = message.get("from")
        message_type = message.get("type")
        if not sender:
            return None

        if message_type != "text" or "text" not in message:
            self.log_util.info(
                service_name="ChannelMessageAdapter",
                message=f"Unsupported WhatsApp message type '{message_type}' from {sender}, ignoring"
            )
            return None

        return NormalizedMessage(
            contact_address=sender,
            text=(message["text"].get("body") or "").strip(),
            phone_number_id=phone_number_id,
            provider_message_id=message.get("id"),
            contact_name=contact_names.get(sender)
        )

    def extract_status_updates(self, payload: Dict[str, Any]) -> List[StatusUpdate]:
        updates: List[StatusUpdate] = []
        for value in self._message_changes(payload):
            for status in value.get("statuses") or []:
                if status.get("id") and status.get("status"):
                    updates.append(StatusUpdate(
                        provider_message_id=status["id"],
                        status=status["status"],
                        recipient=status.get("recipient_id")
                    ))
        return updates
