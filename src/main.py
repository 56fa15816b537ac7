import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import FlowDBException, FlowException

# Services
from services.contact_lock_service import ContactLockService
from services.session_service import SessionService
from services.graph_navigator_service import GraphNavigatorService
from services.audit_service import AuditService
from services.message_sender_service import MessageSenderService
from services.callback_invoker_service import CallbackInvokerService
from services.delay_scheduler_service import DelaySchedulerService
from services.step_executor_service import StepExecutorService
from services.flow_engine_service import FlowEngineService
from services.webhook_service import WebhookService

# APIs
from apis.webhook_message_api import create_webhook_message_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

# Services
contact_lock_service = ContactLockService(log_util=log_util)

session_service = SessionService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    contact_lock_service=contact_lock_service
)

graph_navigator_service = GraphNavigatorService(log_util=log_util, flow_db=flow_db)

audit_service = AuditService(log_util=log_util, flow_db=flow_db)

message_sender_service = MessageSenderService(log_util=log_util, environment_utils=environment_utils)

callback_invoker_service = CallbackInvokerService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db
)

# Delay scheduler gets the engine after the engine is built
delay_scheduler_service = DelaySchedulerService(
    log_util=log_util,
    flow_db=flow_db,
    check_interval_seconds=environment_utils.get_env_variable("DELAY_SCHEDULER_INTERVAL_SECONDS")
)

step_executor_service = StepExecutorService(
    log_util=log_util,
    message_sender_service=message_sender_service,
    callback_invoker_service=callback_invoker_service,
    audit_service=audit_service,
    delay_scheduler_service=delay_scheduler_service
)

flow_engine_service = FlowEngineService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    session_service=session_service,
    graph_navigator_service=graph_navigator_service,
    step_executor_service=step_executor_service,
    message_sender_service=message_sender_service,
    audit_service=audit_service
)

delay_scheduler_service.set_flow_engine_service(flow_engine_service)

webhook_service = WebhookService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    flow_engine_service=flow_engine_service
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        await flow_db.ensure_indexes()
    except FlowDBException as e:
        log_util.error(service_name="ChatFlowEngine", message=f"Could not create indexes: {e.message}")

    await delay_scheduler_service.start()
    log_util.info(service_name="ChatFlowEngine", message="Application startup complete")

    yield

    # Shutdown
    await delay_scheduler_service.stop()
    flow_db.close()
    log_util.info(service_name="ChatFlowEngine", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="chatflow engine",
    description="Executes conversational flows for inbound WhatsApp messages",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Webhook message API (receives messages from the channel)
webhook_message_router = create_webhook_message_api(
    log_util=log_util,
    webhook_service=webhook_service
)
app.include_router(webhook_message_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "chatflow_engine"}

# Flow exceptions escaping a handler keep their own status code
@app.exception_handler(FlowException)
async def flow_exception_handler(request: Request, exc: FlowException):
    log_util.error(service_name="ChatFlowEngine", message=f"FlowException: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="ChatFlowEngine", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="ChatFlowEngine", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
