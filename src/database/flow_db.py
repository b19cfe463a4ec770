from motor.motor_asyncio import AsyncIOMotorClient
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError, BulkWriteError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowStoreException, FlowVersionConflictException

# Database
from database.flow_store import FlowStore, generate_flow_id

# Models
from models.flow_data import FlowData
from models.flow_settings_data import FlowMetrics
from models.enrollment_data import FlowEnrollmentData
from models.event_data import StoredEvent
from models.flow_user_context import FlowUserContext

DUPLICATE_KEY_ERROR_CODE = 11000

"""
MongoDB implementation of the flow store
"""
class FlowDB(FlowStore):
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo connection
        self.mongo_uri = self.environment_utils.get_env_variable("MONGO_URI")
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")
        self.max_events = int(self.environment_utils.get_env_variable("MAX_EVENTS"))

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
        Each event loop gets its own motor client.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        # Check if we already have a client for this event loop
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
                'indexes_ready': False,
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
            'enrollments': db.flow_enrollments,
            'events': db.events,
            'user_profiles': db.user_profiles
        }

    async def _collections(self) -> Dict[str, Any]:
        client_data = self._get_client_for_current_loop()
        if not client_data['indexes_ready']:
            await self.ensure_indexes(client_data['collections'])
            client_data['indexes_ready'] = True
        return client_data['collections']

    async def ensure_indexes(self, collections: Dict[str, Any]):
        """
        Indexes that carry correctness guarantees, not just speed:
        - unique message_id is the event dedup index
        - the partial unique index allows one active enrollment per user and flow
        """
        await collections['events'].create_index([("message_id", ASCENDING)], unique=True, name="message_id_unique")
        await collections['events'].create_index([("user_id", ASCENDING), ("event", ASCENDING)], name="user_event")
        await collections['enrollments'].create_index(
            [("flow_id", ASCENDING), ("user_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "active"},
            name="one_active_enrollment_per_user"
        )
        await collections['enrollments'].create_index([("status", ASCENDING), ("next_process_at", ASCENDING)], name="due_enrollments")
        await collections['enrollments'].create_index([("user_id", ASCENDING)], name="user_enrollments")
        await collections['flows'].create_index([("status", ASCENDING)], name="flow_status")

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
        Log a database error and re-raise it as a FlowStoreException.
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowStoreException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FlowDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FlowStoreException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    # Document conversion

    @staticmethod
    def _to_document(model_dict: Dict[str, Any], key: str = "id") -> Dict[str, Any]:
        document = dict(model_dict)
        document["_id"] = document.pop(key) if key == "id" else document[key]
        return document

    @staticmethod
    def _flow_from_document(document: Dict[str, Any]) -> FlowData:
        document = dict(document)
        document["id"] = document.pop("_id")
        return FlowData.model_validate(document)

    @staticmethod
    def _enrollment_from_document(document: Dict[str, Any]) -> FlowEnrollmentData:
        document = dict(document)
        document["id"] = document.pop("_id")
        return FlowEnrollmentData.model_validate(document)

    @staticmethod
    def _event_from_document(document: Dict[str, Any]) -> StoredEvent:
        document = dict(document)
        document.pop("_id", None)
        return StoredEvent.model_validate(document)

    @staticmethod
    def _profile_from_document(document: Dict[str, Any]) -> FlowUserContext:
        document = dict(document)
        document.pop("_id", None)
        return FlowUserContext.model_validate(document)

    # Flow definitions

    async def get_flow_definition(self, flow_id: str) -> Optional[FlowData]:
        collections = await self._collections()
        try:
            result = await collections['flows'].find_one({"_id": flow_id})
            if result is None:
                return None
            return self._flow_from_document(result)
        except Exception as e:
            self._handle_db_operation("get_flow_definition", e)

    async def get_all_flow_definitions(self) -> List[FlowData]:
        collections = await self._collections()
        try:
            flows: List[FlowData] = []
            async for flow_dict in collections['flows'].find({}):
                flows.append(self._flow_from_document(flow_dict))
            return flows
        except Exception as e:
            self._handle_db_operation("get_all_flow_definitions", e)

    async def get_flow_definitions_by_status(self, status: str) -> List[FlowData]:
        collections = await self._collections()
        try:
            flows: List[FlowData] = []
            async for flow_dict in collections['flows'].find({"status": status}):
                flows.append(self._flow_from_document(flow_dict))
            return flows
        except Exception as e:
            self._handle_db_operation("get_flow_definitions_by_status", e)

    async def upsert_flow_definition(self, flow: FlowData, expected_version: Optional[int] = None) -> FlowData:
        collections = await self._collections()
        flow_id = flow.id or generate_flow_id()
        try:
            existing = await collections['flows'].find_one({"_id": flow_id})
            current_version = existing["version"] if existing else 0
            if expected_version is not None and expected_version != current_version:
                raise FlowVersionConflictException(
                    message=f"Flow {flow_id} is at version {current_version}, save was based on version {expected_version}",
                    current_version=current_version
                )

            update: Dict[str, Any] = {
                "id": flow_id,
                "version": current_version + 1,
                "updated_at": datetime.utcnow(),
            }
            if existing:
                update["metrics"] = FlowMetrics.model_validate(existing.get("metrics", {}))
                update["created_at"] = existing.get("created_at")
            saved = flow.model_copy(update=update, deep=True)
            document = self._to_document(saved.model_dump())

            if existing:
                # Version in the filter closes the read-then-write window
                result = await collections['flows'].replace_one({"_id": flow_id, "version": current_version}, document)
                if result.matched_count == 0:
                    raise FlowVersionConflictException(
                        message=f"Flow {flow_id} was modified concurrently",
                        current_version=None
                    )
            else:
                try:
                    await collections['flows'].insert_one(document)
                except DuplicateKeyError:
                    raise FlowVersionConflictException(
                        message=f"Flow {flow_id} was created concurrently",
                        current_version=None
                    )
            return saved
        except FlowVersionConflictException:
            raise
        except Exception as e:
            self._handle_db_operation("upsert_flow_definition", e)

    async def delete_flow_definition(self, flow_id: str) -> bool:
        collections = await self._collections()
        try:
            await collections['enrollments'].delete_many({"flow_id": flow_id})
            result = await collections['flows'].delete_one({"_id": flow_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_flow_definition", e)

    async def duplicate_flow_definition(self, flow_id: str) -> Optional[FlowData]:
        original = await self.get_flow_definition(flow_id)
        if original is None:
            return None
        collections = await self._collections()
        try:
            now = datetime.utcnow()
            copy = original.model_copy(
                update={
                    "id": generate_flow_id(),
                    "name": f"{original.name} (Copy)",
                    "status": "draft",
                    "version": 1,
                    "metrics": FlowMetrics(),
                    "created_at": now,
                    "updated_at": now,
                    "published_at": None,
                    "archived_at": None,
                },
                deep=True
            )
            await collections['flows'].insert_one(self._to_document(copy.model_dump()))
            return copy
        except Exception as e:
            self._handle_db_operation("duplicate_flow_definition", e)

    async def update_flow_metrics(self, flow_id: str, deltas: Dict[str, int]) -> None:
        if not deltas:
            return
        collections = await self._collections()
        try:
            # Pipeline update keeps counters from going negative
            await collections['flows'].update_one(
                {"_id": flow_id},
                [{
                    "$set": {
                        f"metrics.{key}": {"$max": [0, {"$add": [{"$ifNull": [f"$metrics.{key}", 0]}, delta]}]}
                        for key, delta in deltas.items()
                    }
                }]
            )
        except Exception as e:
            self._handle_db_operation("update_flow_metrics", e)

    # Enrollments

    async def get_enrollment(self, enrollment_id: str) -> Optional[FlowEnrollmentData]:
        collections = await self._collections()
        try:
            result = await collections['enrollments'].find_one({"_id": enrollment_id})
            if result is None:
                return None
            return self._enrollment_from_document(result)
        except Exception as e:
            self._handle_db_operation("get_enrollment", e)

    async def get_flow_enrollments(self, flow_id: str, status: Optional[str] = None) -> List[FlowEnrollmentData]:
        collections = await self._collections()
        try:
            query: Dict[str, Any] = {"flow_id": flow_id}
            if status:
                query["status"] = status
            enrollments: List[FlowEnrollmentData] = []
            async for document in collections['enrollments'].find(query):
                enrollments.append(self._enrollment_from_document(document))
            return enrollments
        except Exception as e:
            self._handle_db_operation("get_flow_enrollments", e)

    async def get_user_enrollments(self, user_id: str, flow_id: Optional[str] = None) -> List[FlowEnrollmentData]:
        collections = await self._collections()
        try:
            query: Dict[str, Any] = {"user_id": user_id}
            if flow_id:
                query["flow_id"] = flow_id
            enrollments: List[FlowEnrollmentData] = []
            async for document in collections['enrollments'].find(query):
                enrollments.append(self._enrollment_from_document(document))
            return enrollments
        except Exception as e:
            self._handle_db_operation("get_user_enrollments", e)

    async def upsert_enrollment(self, enrollment: FlowEnrollmentData) -> FlowEnrollmentData:
        collections = await self._collections()
        try:
            document = self._to_document(enrollment.model_dump())
            await collections['enrollments'].replace_one({"_id": enrollment.id}, document, upsert=True)
            return enrollment
        except Exception as e:
            self._handle_db_operation("upsert_enrollment", e)

    async def insert_enrollment_if_absent(self, enrollment: FlowEnrollmentData) -> bool:
        collections = await self._collections()
        try:
            await collections['enrollments'].insert_one(self._to_document(enrollment.model_dump()))
            return True
        except DuplicateKeyError:
            return False
        except Exception as e:
            self._handle_db_operation("insert_enrollment_if_absent", e)

    async def compare_and_set_enrollment(
        self,
        enrollment_id: str,
        expected_status: str,
        expected_current_node_id: str,
        expected_revision: int,
        enrollment: FlowEnrollmentData
    ) -> bool:
        collections = await self._collections()
        try:
            result = await collections['enrollments'].replace_one(
                {
                    "_id": enrollment_id,
                    "status": expected_status,
                    "current_node_id": expected_current_node_id,
                    "revision": expected_revision
                },
                self._to_document(enrollment.model_dump())
            )
            return result.matched_count == 1
        except Exception as e:
            self._handle_db_operation("compare_and_set_enrollment", e)

    async def get_active_enrollments_due(
        self,
        now: datetime,
        limit: Optional[int] = None,
        flow_ids: Optional[List[str]] = None
    ) -> List[FlowEnrollmentData]:
        collections = await self._collections()
        query: Dict[str, Any] = {
            "status": "active",
            "next_process_at": {"$ne": None, "$lte": now}
        }
        if flow_ids is not None:
            query["flow_id"] = {"$in": list(flow_ids)}
        try:
            cursor = collections['enrollments'].find(query).sort("next_process_at", ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            enrollments: List[FlowEnrollmentData] = []
            async for document in cursor:
                enrollments.append(self._enrollment_from_document(document))
            return enrollments
        except Exception as e:
            self._handle_db_operation("get_active_enrollments_due", e)

    # Events

    async def _evict_events(self, collections: Dict[str, Any]):
        # Sliding window: deleting the document frees its message_id in the unique index
        total = await collections['events'].count_documents({})
        excess = total - self.max_events
        if excess <= 0:
            return
        oldest_ids = [
            document["_id"] async for document in
            collections['events'].find({}, {"_id": 1}).sort("_id", ASCENDING).limit(excess)
        ]
        if oldest_ids:
            await collections['events'].delete_many({"_id": {"$in": oldest_ids}})
            self.log_util.debug(
                service_name="FlowDB",
                message=f"Evicted {len(oldest_ids)} oldest event(s); their message ids may be ingested again"
            )

    async def append_event(self, event: StoredEvent) -> bool:
        collections = await self._collections()
        try:
            try:
                await collections['events'].insert_one(event.model_dump())
            except DuplicateKeyError:
                return False
            await self._evict_events(collections)
            return True
        except Exception as e:
            self._handle_db_operation("append_event", e)

    async def append_events(self, events: List[StoredEvent]) -> List[StoredEvent]:
        if not events:
            return []
        collections = await self._collections()
        try:
            rejected = set()
            try:
                await collections['events'].insert_many([event.model_dump() for event in events], ordered=False)
            except BulkWriteError as bwe:
                for write_error in bwe.details.get("writeErrors", []):
                    if write_error.get("code") != DUPLICATE_KEY_ERROR_CODE:
                        raise
                    rejected.add(write_error["index"])
            await self._evict_events(collections)
            return [event for index, event in enumerate(events) if index not in rejected]
        except Exception as e:
            self._handle_db_operation("append_events", e)

    async def has_message_id(self, message_id: str) -> bool:
        collections = await self._collections()
        try:
            return await collections['events'].count_documents({"message_id": message_id}, limit=1) > 0
        except Exception as e:
            self._handle_db_operation("has_message_id", e)

    async def get_events(self, user_id: Optional[str] = None, event_name: Optional[str] = None, limit: Optional[int] = None) -> List[StoredEvent]:
        collections = await self._collections()
        try:
            query: Dict[str, Any] = {}
            if user_id:
                query["user_id"] = user_id
            if event_name:
                query["event"] = event_name
            cursor = collections['events'].find(query).sort("_id", -1)
            if limit is not None:
                cursor = cursor.limit(limit)
            events = [self._event_from_document(document) async for document in cursor]
            events.reverse()
            return events
        except Exception as e:
            self._handle_db_operation("get_events", e)

    async def count_events(self) -> int:
        collections = await self._collections()
        try:
            return await collections['events'].count_documents({})
        except Exception as e:
            self._handle_db_operation("count_events", e)

    # User profiles

    async def get_user_profile(self, user_id: str) -> Optional[FlowUserContext]:
        collections = await self._collections()
        try:
            result = await collections['user_profiles'].find_one({"_id": user_id})
            if result is None:
                return None
            return self._profile_from_document(result)
        except Exception as e:
            self._handle_db_operation("get_user_profile", e)

    async def upsert_user_profile(self, profile: FlowUserContext) -> FlowUserContext:
        collections = await self._collections()
        try:
            document = profile.model_dump()
            document["_id"] = profile.user_id
            await collections['user_profiles'].find_one_and_replace(
                {"_id": profile.user_id},
                document,
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return profile
        except Exception as e:
            self._handle_db_operation("upsert_user_profile", e)
