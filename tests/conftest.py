# tests/conftest.py
import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock

from utils.environment_utils import EnvironmentUtils
from models.channel_config_data import ChannelContext
from services.audit_service import AuditService
from services.callback_invoker_service import CallbackInvokerService
from services.contact_lock_service import ContactLockService
from services.delay_scheduler_service import DelaySchedulerService
from services.flow_engine_service import FlowEngineService
from services.graph_navigator_service import GraphNavigatorService
from services.session_service import SessionService
from services.step_executor_service import StepExecutorService

from fakes import FakeFlowDB, FakeSender, TENANT_ID


@pytest.fixture
def log_util():
    """LogUtil double; tests never ship logs anywhere."""
    return MagicMock()


@pytest.fixture
def make_env(log_util):
    def _make_env(**overrides):
        env = EnvironmentUtils(log_util=log_util)
        env.env_variables.update({
            "WHATSAPP_API_BASE_URL": "https://graph.example.com/v18.0",
            "WHATSAPP_VERIFY_TOKEN": "verify-me",
            "SEND_TIMEOUT_SECONDS": 1.0,
            "CALLBACK_TIMEOUT_SECONDS": 1.0,
            "MAX_STEPS_PER_INVOCATION": 50,
            "SESSION_TTL_SECONDS": 86400,
            "SESSION_PERSIST_RETRIES": 3,
            "FALLBACK_MESSAGE": "",
        })
        env.env_variables.update(overrides)
        return env
    return _make_env


@pytest.fixture
def env(make_env):
    return make_env()


@pytest.fixture
def flow_db():
    db = FakeFlowDB()
    db.add_channel_config()
    return db


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def channel_context(flow_db):
    return ChannelContext.from_config(flow_db.channel_configs[0])


@pytest.fixture
def build_services(log_util, flow_db, sender):
    """Wires the engine the same way main.py does, around the in-memory store."""
    def _build(env, sender=sender):
        lock_service = ContactLockService(log_util=log_util)
        session_service = SessionService(
            log_util=log_util,
            environment_utils=env,
            flow_db=flow_db,
            contact_lock_service=lock_service
        )
        navigator = GraphNavigatorService(log_util=log_util, flow_db=flow_db)
        audit_service = AuditService(log_util=log_util, flow_db=flow_db)
        callback_invoker = CallbackInvokerService(log_util=log_util, environment_utils=env, flow_db=flow_db)
        scheduler = DelaySchedulerService(log_util=log_util, flow_db=flow_db, check_interval_seconds=0.01)
        executor = StepExecutorService(
            log_util=log_util,
            message_sender_service=sender,
            callback_invoker_service=callback_invoker,
            audit_service=audit_service,
            delay_scheduler_service=scheduler
        )
        engine = FlowEngineService(
            log_util=log_util,
            environment_utils=env,
            flow_db=flow_db,
            session_service=session_service,
            graph_navigator_service=navigator,
            step_executor_service=executor,
            message_sender_service=sender,
            audit_service=audit_service
        )
        scheduler.set_flow_engine_service(engine)
        return SimpleNamespace(
            engine=engine,
            scheduler=scheduler,
            executor=executor,
            session_service=session_service,
            navigator=navigator,
            callback_invoker=callback_invoker,
            lock_service=lock_service
        )
    return _build


@pytest.fixture
def services(build_services, env):
    return build_services(env)


@pytest.fixture
def tenant_id():
    return TENANT_ID
