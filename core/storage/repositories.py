"""
Entity repositories.

Each repository binds BaseRepository to one collection and declares how
that collection is paged and indexed. Entity specific queries (access
level restrictions, lookups by natural key, identifier minting) live here.
"""

from typing import Any, Optional, TypedDict

from pymongo import ReturnDocument

from core.storage.base import BaseRepository, Index
from core.storage.pagination import MongoPagedResult, get_path
from core.storage.query import APIQuery


EVENT_ACCESS_LEVEL_FIELD = "content.idData.accessLevel"
EVENT_TIMESTAMP_FIELD = "content.idData.timestamp"
EVENT_ASSET_FIELD = "content.idData.assetId"

IDENTITY_COUNTER_COLLECTION = "identityCounter"
ORGANIZATION_COUNTER = "organization_index"
# Organization ids advance by this step; they are not contiguous.
ORGANIZATION_ID_STEP = 9


class Event(TypedDict, total=False):
    eventId: str
    content: dict[str, Any]
    metadata: dict[str, Any]


class Asset(TypedDict, total=False):
    assetId: str
    content: dict[str, Any]
    metadata: dict[str, Any]


class Bundle(TypedDict, total=False):
    bundleId: str
    bundleProofBlock: int
    content: dict[str, Any]
    metadata: dict[str, Any]


class Account(TypedDict, total=False):
    address: str
    accessLevel: int
    organization: int
    registeredOn: int
    registeredBy: str


class Organization(TypedDict, total=False):
    organizationId: int
    title: str
    owner: str
    active: bool
    createdOn: int
    createdBy: str


def _restrict_access(api_query: APIQuery, field: str, access_level: int) -> APIQuery:
    return api_query.with_filter({field: {"$lte": access_level}})


class EventRepository(BaseRepository[Event]):
    collection_name = "events"
    paginated_field = EVENT_TIMESTAMP_FIELD
    paginated_ascending = False
    indexes = (
        Index("eventId", unique=True),
        Index(EVENT_ASSET_FIELD),
        Index(EVENT_TIMESTAMP_FIELD),
    )

    async def query_events(self, api_query: APIQuery, access_level: int = 0) -> MongoPagedResult:
        """Page through the events visible at ``access_level``."""
        return await self.find(_restrict_access(api_query, EVENT_ACCESS_LEVEL_FIELD, access_level))

    async def search_events(self, api_query: APIQuery, access_level: int = 0) -> MongoPagedResult:
        return await self.search(_restrict_access(api_query, EVENT_ACCESS_LEVEL_FIELD, access_level))

    async def query_event(self, event_id: str, access_level: int = 0) -> Optional[Event]:
        api_query = APIQuery(query={"eventId": event_id})
        return await self.find_one(_restrict_access(api_query, EVENT_ACCESS_LEVEL_FIELD, access_level))

    async def event_exists(self, event_id: str) -> bool:
        return await self.exists_or({"eventId": event_id}, "eventId")

    async def latest_asset_events_of_type(
        self,
        asset_ids: list[str],
        event_type: str,
        access_level: int = 0,
    ) -> list[Event]:
        """
        The newest event of ``event_type`` for each of ``asset_ids``.

        Events sharing a timestamp are ordered by ``_id``, the greater one
        wins. Assets without such an event are left out.
        """
        match = {
            "content.data.type": event_type,
            EVENT_ASSET_FIELD: {"$in": list(asset_ids)},
            EVENT_ACCESS_LEVEL_FIELD: {"$lte": access_level},
        }
        pipeline = [
            {"$match": match},
            {"$sort": {EVENT_TIMESTAMP_FIELD: -1, "_id": -1}},
        ]
        events = await self.aggregate(APIQuery(query=pipeline))

        latest: dict[Any, Event] = {}
        for event in events:
            latest.setdefault(get_path(event, EVENT_ASSET_FIELD), event)
        return list(latest.values())


class AssetRepository(BaseRepository[Asset]):
    collection_name = "assets"
    paginated_field = EVENT_TIMESTAMP_FIELD
    paginated_ascending = False
    indexes = (Index("assetId", unique=True),)

    async def query_asset(self, asset_id: str) -> Optional[Asset]:
        return await self.find_one(APIQuery(query={"assetId": asset_id}))

    async def asset_exists(self, asset_id: str) -> bool:
        return await self.exists_or({"assetId": asset_id}, "assetId")


class BundleRepository(BaseRepository[Bundle]):
    collection_name = "bundles"
    paginated_field = "bundleProofBlock"
    paginated_ascending = False
    indexes = (Index("bundleId", unique=True),)

    async def query_bundle(self, bundle_id: str) -> Optional[Bundle]:
        return await self.find_one(APIQuery(query={"bundleId": bundle_id}))


class AccountRepository(BaseRepository[Account]):
    collection_name = "accounts"
    paginated_field = "registeredOn"
    paginated_ascending = False
    indexes = (Index("address", unique=True),)

    async def query_account(self, address: str, access_level: int = 0) -> Optional[Account]:
        api_query = APIQuery(query={"address": address})
        return await self.find_one(_restrict_access(api_query, "accessLevel", access_level))

    async def query_accounts(self, api_query: APIQuery, access_level: int = 0) -> MongoPagedResult:
        """Accounts no more privileged than the caller."""
        return await self.find(_restrict_access(api_query, "accessLevel", access_level))


class OrganizationRepository(BaseRepository[Organization]):
    collection_name = "organization"
    paginated_field = "createdOn"
    paginated_ascending = False
    indexes = (
        Index("organizationId", unique=True),
        Index("title", unique=True),
        Index("owner", unique=True),
    )

    async def query_organization(self, organization_id: int) -> Optional[Organization]:
        return await self.find_one(APIQuery(query={"organizationId": organization_id}))

    async def get_new_organization_identifier(self) -> int:
        """
        Mint the next organization id.

        The shared counter document is incremented and read in a single
        atomic operation, so concurrent callers never receive the same id.
        """
        with self._wrap_errors("get_new_organization_identifier", counter=ORGANIZATION_COUNTER):
            db = await self.client.get_connection()
            counter = await db[IDENTITY_COUNTER_COLLECTION].find_one_and_update(
                {"identity": ORGANIZATION_COUNTER},
                {"$inc": {"count": ORGANIZATION_ID_STEP}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            return counter["count"]
