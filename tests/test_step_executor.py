# tests/test_step_executor.py
import pytest
from unittest.mock import AsyncMock

from exceptions.flow_exception import GraphMalformedException
from models.execution_data import CallbackResult, ExecutionContext
from models.session_data import SessionData

from fakes import FakeSender, send_step, branch_step, call_step, delay_step, TENANT_ID

CONTACT = "15551234567"


def _context(channel_context, message="", **session_data):
    return ExecutionContext(
        contact_address=CONTACT,
        current_message=message,
        session_data=session_data,
        session=SessionData(contact_address=CONTACT, tenant_id=TENANT_ID, flow_id="flow-1"),
        channel_context=channel_context
    )


async def _graph(services, flow_db, steps, links=None):
    flow_db.add_flow("flow-1", steps, links=links)
    return await services.navigator.load_graph("flow-1")


@pytest.mark.asyncio
async def test_send_message_sends_logs_and_advances(services, flow_db, sender, channel_context):
    graph = await _graph(services, flow_db, [send_step("s1", "Hi"), send_step("s2", "Bye")], [("s1", "s2")])

    outcome = await services.executor.execute(graph.get_step("s1"), _context(channel_context), graph)

    assert outcome.decision.action == "advance"
    assert outcome.decision.step_id == "s2"
    assert sender.texts() == ["Hi"]
    assert flow_db.message_logs[-1].status == "sent"
    assert flow_db.message_logs[-1].provider_message_id == "wamid.1"


@pytest.mark.asyncio
async def test_send_message_waiting_for_response_suspends(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [send_step("s1", "Name?", wait=True), send_step("s2", "Bye")], [("s1", "s2")])

    outcome = await services.executor.execute(graph.get_step("s1"), _context(channel_context), graph)

    assert outcome.decision.is_suspend
    assert outcome.decision.step_id == "s1"


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded_and_still_advances(build_services, env, flow_db, channel_context):
    failing = FakeSender(fail=True)
    services = build_services(env, sender=failing)
    graph = await _graph(services, flow_db, [send_step("s1", "Hi"), send_step("s2", "Bye")], [("s1", "s2")])

    outcome = await services.executor.execute(graph.get_step("s1"), _context(channel_context), graph)

    assert outcome.decision.step_id == "s2"
    assert outcome.side_effect.success is False
    assert flow_db.message_logs[-1].status == "failed"


@pytest.mark.asyncio
async def test_branch_first_matching_condition_wins(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [
        branch_step("b1", [
            {"field": "message", "operator": "contains", "literal": "yes", "targetStepId": "yes-1"},
            {"field": "message", "operator": "contains", "literal": "please", "targetStepId": "yes-2"},
        ], default="fallback"),
        send_step("yes-1", "1"), send_step("yes-2", "2"), send_step("fallback", "f"),
    ])
    context = _context(channel_context, "Yes please")

    first = await services.executor.execute(graph.get_step("b1"), context, graph)
    second = await services.executor.execute(graph.get_step("b1"), context, graph)

    assert first.decision.step_id == second.decision.step_id == "yes-1"
    assert first.side_effect is None


@pytest.mark.asyncio
async def test_branch_uses_default_then_successor(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [
        branch_step("b1", [{"field": "message", "operator": "equals", "literal": "x", "targetStepId": "s2"}], default="s3"),
        branch_step("b2", [{"field": "message", "operator": "equals", "literal": "x", "targetStepId": "s2"}]),
        send_step("s2", "2"), send_step("s3", "3"), send_step("s4", "4"),
    ], links=[("b2", "s4")])
    context = _context(channel_context, "no match")

    assert (await services.executor.execute(graph.get_step("b1"), context, graph)).decision.step_id == "s3"
    assert (await services.executor.execute(graph.get_step("b2"), context, graph)).decision.step_id == "s4"


@pytest.mark.asyncio
async def test_branch_target_outside_flow_is_graph_malformed(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [
        branch_step("b1", [{"field": "message", "operator": "contains", "literal": "", "targetStepId": "gone"}]),
    ])
    with pytest.raises(GraphMalformedException):
        await services.executor.execute(graph.get_step("b1"), _context(channel_context, "hi"), graph)


@pytest.mark.asyncio
async def test_external_call_merges_payload_and_always_advances(services, flow_db, channel_context):
    services.callback_invoker.invoke = AsyncMock(return_value=CallbackResult(success=False, error="HTTP 500"))
    graph = await _graph(services, flow_db, [
        call_step("c1", "cb-1", {"source": "chatflow"}), send_step("s2", "done")
    ], [("c1", "s2")])

    outcome = await services.executor.execute(graph.get_step("c1"), _context(channel_context, "order 42", plan="gold"), graph)

    assert outcome.decision.step_id == "s2"
    services.callback_invoker.invoke.assert_awaited_once_with("cb-1", {
        "source": "chatflow",
        "contactAddress": CONTACT,
        "currentMessage": "order 42",
        "sessionData": {"plan": "gold"},
    })


@pytest.mark.asyncio
async def test_delay_schedules_timer_and_suspends(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [delay_step("d1", 60000), send_step("s2", "later")], [("d1", "s2")])

    context = _context(channel_context)
    outcome = await services.executor.execute(graph.get_step("d1"), context, graph)

    assert outcome.decision.is_suspend
    assert outcome.decision.step_id == "d1"
    pending = flow_db.pending_delays()
    assert len(pending) == 1
    assert pending[0].delay_step_id == "d1"
    assert pending[0].delay_ms == 60000
    assert context.pending_delay_id == pending[0].id


@pytest.mark.asyncio
async def test_resume_send_message_stores_reply_without_resending(services, flow_db, sender, channel_context):
    graph = await _graph(services, flow_db, [
        send_step("ask", "Your name?", wait=True, response_variable="name"), send_step("s2", "Thanks")
    ], [("ask", "s2")])
    context = _context(channel_context, "Ana")

    outcome = await services.executor.resume(graph.get_step("ask"), context, graph)

    assert outcome.decision.step_id == "s2"
    assert context.session_data["name"] == "Ana"
    assert sender.sent == []


@pytest.mark.asyncio
async def test_resume_non_interruptible_delay_keeps_waiting(services, flow_db, channel_context):
    graph = await _graph(services, flow_db, [delay_step("d1", 1000, interruptible=False), send_step("s2", "x")], [("d1", "s2")])

    context = _context(channel_context, "hurry")
    context.session.pending_delay_id = "delay-7"

    outcome = await services.executor.resume(graph.get_step("d1"), context, graph)

    assert outcome.decision.is_suspend
    assert outcome.decision.step_id == "d1"
    assert context.pending_delay_id == "delay-7"
