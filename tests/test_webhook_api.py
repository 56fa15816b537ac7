# tests/test_webhook_api.py
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

from apis.webhook_message_api import create_webhook_message_api
from exceptions.flow_exception import SessionPersistFailedException
from models.execution_data import ExecutionState, InvocationResult
from services.webhook_service import WebhookService

from fakes import PHONE_NUMBER_ID, TENANT_ID

CONTACT = "15551234567"


@pytest.fixture
def engine():
    mock_engine = AsyncMock()
    mock_engine.handle_inbound_message.return_value = InvocationResult(
        state=ExecutionState.SUSPENDED, contact_address=CONTACT, flow_id="flow-1", current_step_id="s1"
    )
    return mock_engine


@pytest.fixture
def webhook_service(log_util, env, flow_db, engine):
    return WebhookService(log_util=log_util, environment_utils=env, flow_db=flow_db, flow_engine_service=engine)


@pytest.fixture
def test_client(log_util, webhook_service):
    app = FastAPI()
    app.include_router(create_webhook_message_api(log_util=log_util, webhook_service=webhook_service))
    with TestClient(app) as client:
        yield client


def test_webhook_verification_success(test_client):
    params = {"hub.mode": "subscribe", "hub.challenge": "12345", "hub.verify_token": "verify-me"}
    response = test_client.get("/webhook/whatsapp", params=params)
    assert response.status_code == 200
    assert response.text == "12345"


def test_webhook_verification_failure(test_client):
    params = {"hub.mode": "subscribe", "hub.challenge": "12345", "hub.verify_token": "wrong_token"}
    response = test_client.get("/webhook/whatsapp", params=params)
    assert response.status_code == 403


def test_whatsapp_message_is_handed_to_engine(test_client, engine):
    payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"field": "messages", "value": {
        "metadata": {"phone_number_id": PHONE_NUMBER_ID},
        "messages": [{"from": CONTACT, "id": "wamid.ID", "text": {"body": "Hello"}, "type": "text"}]
    }}]}]}

    response = test_client.post("/webhook/whatsapp", json=payload)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    engine.handle_inbound_message.assert_awaited_once()
    args = engine.handle_inbound_message.call_args.args
    assert args[0] == CONTACT
    assert args[1] == "Hello"
    assert args[2].tenant_id == TENANT_ID
    assert args[2].credentials.phone_number_id == PHONE_NUMBER_ID


def test_whatsapp_invalid_body_is_acknowledged(test_client, engine):
    response = test_client.post("/webhook/whatsapp", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    engine.handle_inbound_message.assert_not_awaited()


def test_generic_message_is_accepted(test_client, engine):
    response = test_client.post("/webhook/message", json={
        "contact_address": CONTACT, "text": "hello", "phone_number_id": PHONE_NUMBER_ID
    })

    assert response.status_code == 202
    assert response.json()["status"] == "accepted"
    engine.handle_inbound_message.assert_awaited_once()


def test_generic_message_requires_contact_address(test_client):
    response = test_client.post("/webhook/message", json={"text": "hello", "phone_number_id": PHONE_NUMBER_ID})
    assert response.status_code == 422


def test_health(test_client):
    response = test_client.get("/webhook/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_unknown_phone_number_is_ignored(webhook_service, engine):
    result = await webhook_service.process_inbound_message(CONTACT, "hello", "000000")
    assert result["status"] == "ignored"
    engine.handle_inbound_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_engine_failure_is_reported_not_raised(webhook_service, engine):
    engine.handle_inbound_message.side_effect = SessionPersistFailedException(message="version conflict")

    result = await webhook_service.process_inbound_message(CONTACT, "hello", PHONE_NUMBER_ID)

    assert result["status"] == "error"
    assert result["status_code"] == 503
