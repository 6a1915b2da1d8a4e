"""
MongoDB database utilities for async operations.
Handles connection, indexing and the atomic updates on tracked releases.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from scheduler.errors import DuplicateReleaseError
from tracker.models import (
    Cadence, PendingStatus, PendingUpdate, RelationCandidate, TrackedRelease, UpdateRecord
)

logger = structlog.get_logger(__name__)

CYCLES_COLLECTION = "check_cycles"


def _to_release(document: Optional[Dict[str, Any]]) -> Optional[TrackedRelease]:
    if not document:
        return None
    document.pop('_id', None)
    return TrackedRelease(**document)


class MongoDBManager:
    """
    Async MongoDB manager for tracked releases.
    Every mutation of a release's embedded lists is a single update_one.
    """

    def __init__(self, connection_url: str, database_name: str, collection_name: str):
        """
        Initialize MongoDB manager.

        Args:
            connection_url: MongoDB connection URL
            database_name: Name of the database
            collection_name: Name of the tracked releases collection
        """
        self.connection_url = connection_url
        self.database_name = database_name
        self.collection_name = collection_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.collection: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Establish connection to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.connection_url)
            self.database = self.client[self.database_name]
            self.collection = self.database[self.collection_name]

            await self.client.admin.command('ping')
            logger.info("Successfully connected to MongoDB",
                        database=self.database_name,
                        collection=self.collection_name)

            await self._create_indexes()

        except ConnectionFailure as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def ping(self) -> bool:
        """True when the server answers a ping."""
        if not self.client:
            return False
        try:
            await self.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.warning("MongoDB ping failed", error=str(e))
            return False

    async def _create_indexes(self) -> None:
        """Create indexes for the query patterns the engine uses."""
        try:
            await self.collection.create_index("release_id", unique=True)
            await self.collection.create_index([("account_id", 1), ("game_id", 1)], unique=True)
            await self.collection.create_index([("account_id", 1), ("is_active", 1)])
            await self.collection.create_index("pending_updates.pending_id")
            await self.collection.create_index("relation_candidates.candidate_id")
            await self.collection.create_index("last_checked")

            await self.database[CYCLES_COLLECTION].create_index("cycle_id", unique=True)
            await self.database[CYCLES_COLLECTION].create_index([("account_id", 1), ("started_at", -1)])

            logger.info("Successfully created MongoDB indexes")

        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    # Reads

    async def get_release(self, release_id: str) -> Optional[TrackedRelease]:
        """Retrieve a release by id."""
        try:
            document = await self.collection.find_one({"release_id": release_id})
            return _to_release(document)
        except Exception as e:
            logger.error("Failed to retrieve release", release_id=release_id, error=str(e))
            raise

    async def get_release_by_candidate(self, candidate_id: str) -> Optional[TrackedRelease]:
        """Retrieve the release owning a relation candidate."""
        try:
            document = await self.collection.find_one({"relation_candidates.candidate_id": candidate_id})
            return _to_release(document)
        except Exception as e:
            logger.error("Failed to retrieve release by candidate", candidate_id=candidate_id, error=str(e))
            raise

    async def get_active_releases(self, account_id: str) -> List[TrackedRelease]:
        """Active releases for one account."""
        try:
            cursor = self.collection.find({"account_id": account_id, "is_active": True})
            releases = []
            async for document in cursor:
                releases.append(_to_release(document))
            logger.debug("Retrieved active releases", account_id=account_id, count=len(releases))
            return releases
        except Exception as e:
            logger.error("Failed to retrieve active releases", account_id=account_id, error=str(e))
            raise

    async def get_all_active_releases(self) -> List[TrackedRelease]:
        """Every active release across accounts."""
        try:
            releases = []
            async for document in self.collection.find({"is_active": True}):
                releases.append(_to_release(document))
            return releases
        except Exception as e:
            logger.error("Failed to retrieve active releases", error=str(e))
            raise

    async def get_account_cadences(self, account_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        Cadences and latest check time of active releases, grouped by account.

        Returns:
            {account_id: {"cadences": [Cadence, ...], "last_checked": datetime | None}}
        """
        query: Dict[str, Any] = {"is_active": True}
        if account_id is not None:
            query["account_id"] = account_id
        projection = {"account_id": 1, "check_frequency": 1, "last_checked": 1, "_id": 0}

        try:
            accounts: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"cadences": [], "last_checked": None})
            async for document in self.collection.find(query, projection):
                entry = accounts[document["account_id"]]
                entry["cadences"].append(Cadence(document.get("check_frequency", Cadence.DAILY.value)))
                checked = document.get("last_checked")
                if checked and (entry["last_checked"] is None or checked > entry["last_checked"]):
                    entry["last_checked"] = checked
            return dict(accounts)
        except Exception as e:
            logger.error("Failed to retrieve account cadences", account_id=account_id, error=str(e))
            raise

    # Writes

    async def insert_release(self, release: TrackedRelease) -> TrackedRelease:
        """
        Insert a new tracked release.

        Raises:
            DuplicateReleaseError: when the account already tracks the game
        """
        try:
            await self.collection.insert_one(release.model_dump(mode="python"))
            logger.debug("Inserted release", release_id=release.release_id, title=release.title)
            return release
        except DuplicateKeyError:
            logger.warning("Release already tracked", account_id=release.account_id, game_id=release.game_id)
            raise DuplicateReleaseError(
                f"'{release.title}' is already tracked",
                {"account_id": release.account_id, "game_id": release.game_id},
            )
        except Exception as e:
            logger.error("Failed to insert release", release_id=release.release_id, error=str(e))
            raise

    async def apply_update(
        self,
        release_id: str,
        record: UpdateRecord,
        fields: Dict[str, Any],
        stale_pending_ids: Optional[List[str]] = None,
        require_pending_id: Optional[str] = None
    ) -> bool:
        """
        Append an update record, set fields and drop stale pending entries in one write.

        Args:
            release_id: Target release
            record: Record appended to update_history
            fields: Top-level fields to $set
            stale_pending_ids: Pending entries removed in the same write
            require_pending_id: Only apply while this pending entry is still open

        Returns:
            bool: False when the release (or the required open pending entry) is gone
        """
        query: Dict[str, Any] = {"release_id": release_id}
        if require_pending_id is not None:
            query["pending_updates"] = {
                "$elemMatch": {"pending_id": require_pending_id, "status": PendingStatus.OPEN.value}
            }

        update: Dict[str, Any] = {
            "$push": {"update_history": record.model_dump(mode="python")},
            "$set": fields,
        }
        pulled = list(stale_pending_ids or [])
        if require_pending_id is not None and require_pending_id not in pulled:
            pulled.append(require_pending_id)
        if pulled:
            update["$pull"] = {"pending_updates": {"pending_id": {"$in": pulled}}}

        try:
            result = await self.collection.update_one(query, update)
            if result.matched_count == 0:
                logger.warning("Release not found for update", release_id=release_id,
                               pending_id=require_pending_id)
                return False
            logger.debug("Applied update", release_id=release_id, version=record.display_version)
            return True
        except Exception as e:
            logger.error("Failed to apply update", release_id=release_id, error=str(e))
            raise

    async def add_pending_update(self, release_id: str, pending: PendingUpdate) -> bool:
        """
        Queue a pending update unless one with the same dedup key exists.

        Returns:
            bool: True if queued, False if an entry with the key already exists
        """
        try:
            result = await self.collection.update_one(
                {
                    "release_id": release_id,
                    "pending_updates.dedup_key": {"$ne": pending.dedup_key},
                },
                {"$push": {"pending_updates": pending.model_dump(mode="python")}}
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to add pending update", release_id=release_id, error=str(e))
            raise

    async def reject_pending_update(self, release_id: str, pending_id: str) -> bool:
        """
        Mark an open pending entry rejected. It stays stored so its key keeps suppressing.

        Returns:
            bool: False when no open entry with that id exists
        """
        try:
            result = await self.collection.update_one(
                {
                    "release_id": release_id,
                    "pending_updates": {
                        "$elemMatch": {"pending_id": pending_id, "status": PendingStatus.OPEN.value}
                    },
                },
                {"$set": {
                    "pending_updates.$.status": PendingStatus.REJECTED.value,
                    "pending_updates.$.resolved_at": datetime.utcnow(),
                }}
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to reject pending update", release_id=release_id,
                         pending_id=pending_id, error=str(e))
            raise

    async def update_release_fields(self, release_id: str, fields: Dict[str, Any]) -> bool:
        """
        Set top-level fields on a release.

        Returns:
            bool: True if the release exists
        """
        try:
            result = await self.collection.update_one({"release_id": release_id}, {"$set": fields})
            return result.matched_count > 0
        except Exception as e:
            logger.error("Failed to update release", release_id=release_id, error=str(e))
            raise

    async def touch_last_checked(self, release_id: str, checked_at: datetime) -> None:
        """Record when a release was last checked."""
        await self.update_release_fields(release_id, {"last_checked": checked_at})

    async def add_relation_candidate(self, release_id: str, candidate: RelationCandidate) -> bool:
        """
        Store a relation candidate unless the pair is already known (including dismissed).

        Returns:
            bool: True if stored
        """
        try:
            result = await self.collection.update_one(
                {
                    "release_id": release_id,
                    "relation_candidates.candidate_key": {"$ne": candidate.candidate_key},
                },
                {"$push": {"relation_candidates": candidate.model_dump(mode="python")}}
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to add relation candidate", release_id=release_id, error=str(e))
            raise

    async def dismiss_relation_candidate(self, candidate_id: str) -> bool:
        """Mark an undismissed candidate dismissed."""
        try:
            result = await self.collection.update_one(
                {"relation_candidates": {"$elemMatch": {"candidate_id": candidate_id, "dismissed": False}}},
                {"$set": {"relation_candidates.$.dismissed": True}}
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to dismiss relation candidate", candidate_id=candidate_id, error=str(e))
            raise

    async def remove_relation_candidate(self, candidate_id: str) -> bool:
        """Remove an undismissed candidate once it has been resolved."""
        try:
            result = await self.collection.update_one(
                {"relation_candidates": {"$elemMatch": {"candidate_id": candidate_id, "dismissed": False}}},
                {"$pull": {"relation_candidates": {"candidate_id": candidate_id}}}
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to remove relation candidate", candidate_id=candidate_id, error=str(e))
            raise

    async def record_cycle_summary(self, summary: Dict[str, Any]) -> None:
        """Persist a check cycle summary."""
        try:
            await self.database[CYCLES_COLLECTION].insert_one(dict(summary))
        except Exception as e:
            logger.error("Failed to store cycle summary", cycle_id=summary.get("cycle_id"), error=str(e))
            raise

    async def get_database_stats(self) -> Dict[str, Any]:
        """Counts useful for status output."""
        try:
            total = await self.collection.count_documents({})
            active = await self.collection.count_documents({"is_active": True})
            with_pending = await self.collection.count_documents(
                {"pending_updates": {"$elemMatch": {"status": PendingStatus.OPEN.value}}}
            )
            accounts = await self.collection.distinct("account_id", {"is_active": True})
            return {
                "total_releases": total,
                "active_releases": active,
                "releases_with_pending": with_pending,
                "active_accounts": len(accounts),
                "database_name": self.database_name,
                "collection_name": self.collection_name,
            }
        except Exception as e:
            logger.error("Failed to get database stats", error=str(e))
            raise
