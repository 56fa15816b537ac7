from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pydantic import TypeAdapter, ValidationError
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowDBException, FlowValidationException

# Models
from models.flow_data import FlowData, FlowStep, FlowLink
from models.session_data import SessionData
from models.message_log_data import MessageLogData
from models.callback_data import CallbackData, CallbackLogData
from models.channel_config_data import ChannelConfigData
from models.delay_data import DelayData

_flow_step_adapter = TypeAdapter(FlowStep)

"""
Database class for flow graph, session, audit and scheduler storage
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo connection
        self.mongo_uri = self.environment_utils.get_env_variable("MONGO_URI")
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB client - will be initialized lazily on first use
        # Use a dictionary keyed by event loop ID to support multiple event loops
        self._clients = {}  # {loop_id: client_data}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Returns a dictionary with 'client', 'db', and 'collections' for the current event loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self.mongo_uri,
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': self._initialize_collections_for_client(db),
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        """
        return {
            'flows': db.flows,
            'flow_steps': db.flow_steps,
            'flow_links': db.flow_links,
            'sessions': db.sessions,
            'message_logs': db.message_logs,
            'callbacks': db.callbacks,
            'callback_logs': db.callback_logs,
            'channel_configs': db.channel_configs,
            'delays': db.delays
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Log a failed database operation and re-raise it as FlowDBException.
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FlowDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FlowDBException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    @staticmethod
    def _id_query(record_id: str) -> Dict[str, Any]:
        # Editor-generated ids are not always ObjectIds
        if ObjectId.is_valid(record_id):
            return {"_id": {"$in": [ObjectId(record_id), record_id]}}
        return {"_id": record_id}

    @staticmethod
    def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
        doc["id"] = str(doc.pop("_id"))
        return doc

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the engine relies on. Safe to call on every startup.
        """
        client_data = self._get_client_for_current_loop()
        collections = client_data['collections']
        try:
            await collections['sessions'].create_index([("contact_address", ASCENDING)], unique=True)
            await collections['flow_steps'].create_index([("flow_id", ASCENDING)])
            await collections['flow_links'].create_index([("flow_id", ASCENDING)])
            await collections['flows'].create_index([("tenant_id", ASCENDING), ("is_active", ASCENDING)])
            await collections['channel_configs'].create_index([("phone_number_id", ASCENDING)])
            await collections['delays'].create_index([("processed", ASCENDING), ("delay_completes_at", ASCENDING)])
            await collections['message_logs'].create_index([("contact_address", ASCENDING), ("created_at", ASCENDING)])
        except Exception as e:
            self._handle_db_operation("ensure_indexes", e)

    # Graph store
    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one(self._id_query(flow_id))
            if result is None:
                return None
            return FlowData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("get_flow", e)

    async def get_steps(self, flow_id: str) -> List[FlowStep]:
        """
        Get all steps of a flow. Each step's configuration is validated against
        its kind; a malformed step rejects the whole flow.
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flow_steps'].find({"flow_id": flow_id})
            raw_steps = [doc async for doc in cursor]
        except Exception as e:
            self._handle_db_operation("get_steps", e)

        steps = []
        for doc in raw_steps:
            doc.pop("_id", None)
            try:
                steps.append(_flow_step_adapter.validate_python(doc))
            except ValidationError as e:
                self.log_util.error(
                    service_name="FlowDB",
                    message=f"Invalid step {doc.get('id')} (kind: {doc.get('kind')}) in flow {flow_id}: {str(e)}"
                )
                raise FlowValidationException(
                    message=f"Step {doc.get('id')} in flow {flow_id} has invalid configuration for kind '{doc.get('kind')}'"
                )
        return steps

    async def get_links(self, flow_id: str) -> List[FlowLink]:
        """
        Get all links of a flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flow_links'].find({"flow_id": flow_id})
            links = []
            async for doc in cursor:
                doc.pop("_id", None)
                links.append(FlowLink.model_validate(doc))
            return links
        except ValidationError as e:
            raise FlowValidationException(message=f"Invalid link in flow {flow_id}: {str(e)}")
        except Exception as e:
            self._handle_db_operation("get_links", e)

    async def get_active_flows_with_triggers(self, tenant_id: str) -> List[FlowData]:
        """
        Get active flows of a tenant that declare at least one trigger keyword
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({
                "tenant_id": tenant_id,
                "is_active": True,
                "trigger_keywords.0": {"$exists": True}
            })
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._with_id(flow_dict)))
            return flows
        except Exception as e:
            self._handle_db_operation("get_active_flows_with_triggers", e)

    # Session store
    async def get_session(self, contact_address: str) -> Optional[SessionData]:
        """
        Get the session of a contact
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['sessions'].find_one({"contact_address": contact_address})
            if result is None:
                return None
            return SessionData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("get_session", e)

    async def upsert_session(self, session: SessionData) -> SessionData:
        """
        Create or fully replace the session of a contact
        """
        client_data = self._get_client_for_current_loop()
        try:
            session_dict = session.model_dump(exclude={"id"})
            session_dict["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['sessions'].find_one_and_replace(
                {"contact_address": session.contact_address},
                session_dict,
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return SessionData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("upsert_session", e)

    async def update_session(
        self,
        contact_address: str,
        partial: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Optional[SessionData]:
        """
        Apply a partial update to a session and bump its version.
        When expected_version is given the update only applies if the stored
        version still matches; None is returned on a mismatch.
        """
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {"contact_address": contact_address}
            if expected_version is not None:
                query["version"] = expected_version
            update_dict = dict(partial)
            update_dict.pop("version", None)
            update_dict["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['sessions'].find_one_and_update(
                query,
                {"$set": update_dict, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return SessionData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("update_session", e)

    # Audit sink
    async def save_message_log(self, message_log: MessageLogData) -> Optional[MessageLogData]:
        """
        Append a message log row
        """
        client_data = self._get_client_for_current_loop()
        try:
            log_dict = message_log.model_dump(exclude={"id"})
            result = await client_data['collections']['message_logs'].insert_one(log_dict)
            log_dict["id"] = str(result.inserted_id)
            log_dict.pop("_id", None)
            return MessageLogData.model_validate(log_dict)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving message log: {str(e)}")
            return None

    # Callbacks
    async def get_callback(self, callback_id: str) -> Optional[CallbackData]:
        """
        Get a callback by its ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['callbacks'].find_one(self._id_query(callback_id))
            if result is None:
                return None
            return CallbackData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("get_callback", e)

    async def save_callback_log(self, callback_log: CallbackLogData) -> Optional[CallbackLogData]:
        """
        Append a callback execution log row
        """
        client_data = self._get_client_for_current_loop()
        try:
            log_dict = callback_log.model_dump(exclude={"id"})
            result = await client_data['collections']['callback_logs'].insert_one(log_dict)
            log_dict["id"] = str(result.inserted_id)
            log_dict.pop("_id", None)
            return CallbackLogData.model_validate(log_dict)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving callback log: {str(e)}")
            return None

    # Channel configuration
    async def get_channel_config_by_phone_number_id(self, phone_number_id: str) -> Optional[ChannelConfigData]:
        """
        Get the active channel configuration that receives on a phone number ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['channel_configs'].find_one({
                "phone_number_id": phone_number_id,
                "is_active": True
            })
            if result is None:
                return None
            return ChannelConfigData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("get_channel_config_by_phone_number_id", e)

    async def get_channel_config_by_tenant(self, tenant_id: str) -> Optional[ChannelConfigData]:
        """
        Get the active channel configuration of a tenant
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['channel_configs'].find_one({
                "tenant_id": tenant_id,
                "is_active": True
            })
            if result is None:
                return None
            return ChannelConfigData.model_validate(self._with_id(result))
        except Exception as e:
            self._handle_db_operation("get_channel_config_by_tenant", e)

    # Delay CRUD operations
    async def save_delay(self, delay: DelayData) -> Optional[DelayData]:
        """
        Save a delay record to the database.
        """
        client_data = self._get_client_for_current_loop()
        try:
            delay_dict = delay.model_dump(exclude={"id"})
            result = await client_data['collections']['delays'].insert_one(delay_dict)
            if result.inserted_id is None:
                self.log_util.error(service_name="FlowDB", message="Failed to save delay")
                return None
            delay_dict["id"] = str(result.inserted_id)
            delay_dict.pop("_id", None)
            return DelayData.model_validate(delay_dict)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving delay: {str(e)}")
            return None

    async def get_pending_delays(self, now: Optional[datetime] = None) -> List[DelayData]:
        """
        Get all delays that are not processed and whose completion time has passed.
        """
        client_data = self._get_client_for_current_loop()
        try:
            now = now or datetime.utcnow()
            cursor = client_data['collections']['delays'].find({
                "processed": False,
                "delay_completes_at": {"$lte": now}
            }).sort("delay_completes_at", ASCENDING)
            results = []
            async for doc in cursor:
                results.append(DelayData.model_validate(self._with_id(doc)))
            return results
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting pending delays: {str(e)}")
            return []

    async def claim_delay(self, delay_id: str) -> bool:
        """
        Atomically mark a pending delay as processed.
        Returns True only for the caller that flipped the flag.
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_one(
                {"_id": ObjectId(delay_id), "processed": False},
                {
                    "$set": {
                        "processed": True,
                        "updated_at": datetime.utcnow()
                    }
                }
            )
            return result.modified_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error claiming delay: {str(e)}")
            return False

    async def cancel_pending_delays(self, contact_address: str) -> int:
        """
        Mark every pending delay of a contact as processed. Returns how many were cancelled.
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_many(
                {"contact_address": contact_address, "processed": False},
                {
                    "$set": {
                        "processed": True,
                        "updated_at": datetime.utcnow()
                    }
                }
            )
            return result.modified_count
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error cancelling delays: {str(e)}")
            return 0
