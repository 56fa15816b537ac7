from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.webhook_service import WebhookService

# Models
from models.request.inbound_message_request import InboundMessageRequest
from models.response.inbound_message_response import InboundMessageResponse


def create_webhook_message_api(
    log_util: LogUtil,
    webhook_service: WebhookService
) -> APIRouter:
    """
    Create API router for inbound chat messages.
    Message handling runs in the background; every endpoint answers immediately.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.get("/whatsapp")
    async def verify_whatsapp_webhook(
        hub_mode: str = Query(None, alias="hub.mode"),
        hub_verify_token: str = Query(None, alias="hub.verify_token"),
        hub_challenge: str = Query(None, alias="hub.challenge")
    ):
        """WhatsApp webhook verification"""
        challenge = webhook_service.verify_subscription(hub_mode, hub_verify_token, hub_challenge)
        if challenge is None:
            raise HTTPException(status_code=403, detail="Forbidden")
        return PlainTextResponse(challenge)

    @router.post("/whatsapp")
    async def receive_whatsapp_webhook(request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
        """
        Receive a WhatsApp Cloud API webhook. Always acknowledged with 200 so
        the provider does not retry; malformed bodies are logged and dropped.
        """
        try:
            payload = await request.json()
        except ValueError as e:
            log_util.warning(
                service_name="WebhookMessageAPI",
                message=f"Ignoring WhatsApp webhook with invalid JSON body: {str(e)}"
            )
            return {"success": True}

        if not isinstance(payload, dict):
            log_util.warning(service_name="WebhookMessageAPI", message="Ignoring WhatsApp webhook with non-object body")
            return {"success": True}

        background_tasks.add_task(webhook_service.process_whatsapp_payload, payload)
        return {"success": True}

    @router.post("/message", response_model=InboundMessageResponse, status_code=status.HTTP_202_ACCEPTED)
    async def receive_message(
        request: InboundMessageRequest,
        background_tasks: BackgroundTasks
    ) -> InboundMessageResponse:
        """
        Accept a channel-agnostic inbound message for flow processing.
        """
        log_util.info(
            service_name="WebhookMessageAPI",
            message=f"Accepted message from {request.contact_address} on phone number {request.phone_number_id}"
        )
        background_tasks.add_task(
            webhook_service.process_inbound_message,
            request.contact_address,
            request.text,
            request.phone_number_id
        )
        return InboundMessageResponse(
            status="accepted",
            message="Message queued for flow processing"
        )

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "webhook_message_api",
            "service": "chatflow_engine"
        }

    return router
