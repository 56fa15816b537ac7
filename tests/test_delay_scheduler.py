# tests/test_delay_scheduler.py
import asyncio
import pytest
from datetime import datetime, timedelta

from models.delay_data import DelayData
from models.execution_data import ExecutionState

from fakes import send_step, delay_step, TENANT_ID

CONTACT = "15551234567"


def _delay_flow(flow_db, interruptible=True):
    flow_db.add_flow(
        "flow-1",
        [delay_step("wait", 60000, interruptible=interruptible), send_step("after", "Time is up")],
        links=[("wait", "after")],
        trigger_keywords=["remind"]
    )


def _later():
    return datetime.utcnow() + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_timer_is_not_fired_before_it_is_due(services, flow_db, channel_context):
    _delay_flow(flow_db)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)

    assert await services.scheduler.fire_due_delays() == []
    assert len(flow_db.pending_delays()) == 1


@pytest.mark.asyncio
async def test_due_timer_resumes_session_once(services, flow_db, sender, channel_context):
    _delay_flow(flow_db)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)

    first = await services.scheduler.fire_due_delays(now=_later())
    second = await services.scheduler.fire_due_delays(now=_later())

    assert [r.state for r in first] == [ExecutionState.COMPLETED]
    assert second == []
    assert sender.texts() == ["Time is up"]


@pytest.mark.asyncio
async def test_reply_interrupts_delay_and_cancels_timer(services, flow_db, sender, channel_context):
    _delay_flow(flow_db)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)

    result = await services.engine.handle_inbound_message(CONTACT, "never mind, now please", channel_context)

    assert result.state == ExecutionState.COMPLETED
    assert flow_db.pending_delays() == []
    assert await services.scheduler.fire_due_delays(now=_later()) == []
    assert sender.texts() == ["Time is up"]


@pytest.mark.asyncio
async def test_non_interruptible_delay_ignores_reply(services, flow_db, sender, channel_context):
    _delay_flow(flow_db, interruptible=False)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)

    result = await services.engine.handle_inbound_message(CONTACT, "hurry up", channel_context)
    assert result.state == ExecutionState.SUSPENDED
    assert result.current_step_id == "wait"
    assert sender.sent == []

    fired = await services.scheduler.fire_due_delays(now=_later())
    assert [r.state for r in fired] == [ExecutionState.COMPLETED]


@pytest.mark.asyncio
async def test_stale_timer_is_a_no_op(services, flow_db, sender, channel_context):
    _delay_flow(flow_db)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)
    timer = flow_db.pending_delays()[0]

    # The session moves on without the timer being cancelled
    parked = await services.session_service.get_session(CONTACT)
    moved = await services.session_service.advance(parked, "after", status="active")

    fired = await services.scheduler.fire_due_delays(now=_later())

    assert [r.state for r in fired] == [ExecutionState.SKIPPED]
    assert flow_db.delays[timer.id].processed is True
    assert sender.sent == []
    stored = flow_db.sessions[CONTACT]
    assert stored.version == moved.version
    assert stored.current_step_id == "after"


@pytest.mark.asyncio
async def test_claimed_timer_loses_to_reply_that_returns_to_same_delay(services, flow_db, sender, channel_context):
    flow_db.add_flow(
        "flow-1",
        [send_step("a0", "Starting"), delay_step("wait", 60000), send_step("s2", "Checking in")],
        links=[("a0", "wait"), ("wait", "s2"), ("s2", "wait")],
        trigger_keywords=["remind"]
    )
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)
    timer = flow_db.pending_delays()[0]
    assert await flow_db.claim_delay(timer.id)

    async with services.lock_service.hold(CONTACT):
        reply = asyncio.create_task(services.engine.handle_inbound_message(CONTACT, "any news?", channel_context))
        for _ in range(5):
            await asyncio.sleep(0)
        resumed = asyncio.create_task(services.engine.resume_delayed(timer))
        for _ in range(5):
            await asyncio.sleep(0)

    reply_result = await reply
    resumed_result = await resumed

    assert reply_result.state == ExecutionState.SUSPENDED
    assert reply_result.current_step_id == "wait"
    assert resumed_result.state == ExecutionState.SKIPPED
    assert sender.texts() == ["Starting", "Checking in"]
    replacement = flow_db.pending_delays()
    assert len(replacement) == 1
    assert replacement[0].id != timer.id
    assert flow_db.sessions[CONTACT].pending_delay_id == replacement[0].id


@pytest.mark.asyncio
async def test_timer_not_recorded_on_session_is_skipped(services, flow_db, sender, channel_context):
    _delay_flow(flow_db)
    await services.engine.handle_inbound_message(CONTACT, "remind me", channel_context)
    session_before = flow_db.sessions[CONTACT]

    foreign = DelayData(
        id="foreign-1",
        contact_address=CONTACT,
        tenant_id=TENANT_ID,
        flow_id="flow-1",
        delay_step_id="wait",
        delay_ms=1000,
        delay_completes_at=datetime.utcnow()
    )
    result = await services.engine.resume_delayed(foreign)

    assert result.state == ExecutionState.SKIPPED
    assert sender.sent == []
    assert flow_db.sessions[CONTACT].version == session_before.version
    assert flow_db.sessions[CONTACT].current_step_id == "wait"


@pytest.mark.asyncio
async def test_timer_for_contact_without_session_is_skipped(services):
    orphan = DelayData(
        contact_address="19999999999",
        flow_id="flow-1",
        delay_step_id="wait",
        delay_ms=0,
        delay_completes_at=datetime.utcnow()
    )
    result = await services.engine.resume_delayed(orphan)
    assert result.state == ExecutionState.SKIPPED


@pytest.mark.asyncio
async def test_new_delay_replaces_pending_timer(services, flow_db, channel_context):
    _delay_flow(flow_db)
    session = await services.session_service.load_or_create(CONTACT, "remind", TENANT_ID)
    graph = await services.navigator.load_graph("flow-1")
    step = graph.get_step("wait")

    await services.scheduler.schedule(session, step, 1000, TENANT_ID)
    await services.scheduler.schedule(session, step, 2000, TENANT_ID)

    pending = flow_db.pending_delays()
    assert len(pending) == 1
    assert pending[0].delay_ms == 2000


@pytest.mark.asyncio
async def test_scheduler_loop_starts_and_stops(services, flow_db, sender, channel_context):
    flow_db.add_flow(
        "flow-1",
        [delay_step("wait", 0), send_step("after", "Done waiting")],
        links=[("wait", "after")],
        trigger_keywords=["remind"]
    )
    await services.engine.handle_inbound_message(CONTACT, "remind", channel_context)

    await services.scheduler.start()
    for _ in range(50):
        if sender.sent:
            break
        await asyncio.sleep(0.01)
    await services.scheduler.stop()

    assert sender.texts() == ["Done waiting"]
