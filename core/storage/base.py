"""
Generic MongoDB repository.

BaseRepository implements CRUD, cursor paginated find/aggregate/search and
existence checks for one collection. Entity repositories subclass it and
declare their collection, pagination policy and indexes.

Every operation wraps store failures in RepositoryError after logging the
collection, the operation and the serialized query; no driver exception
escapes a repository method.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import (
    Any,
    ClassVar,
    Generic,
    Iterator,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from bson import json_util
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.results import DeleteResult, InsertOneResult

from core.errors import DeveloperError, RepositoryError, StorageError
from core.logging import get_logger
from core.storage.client import DatabaseClient
from core.storage.pagination import (
    ID_FIELD,
    MongoPagedResult,
    build_cursor_filter,
    build_sort,
    ensure_projected,
    merge_filters,
    prepare_response,
    strip_fields,
)
from core.storage.query import APIQuery


T = TypeVar("T", bound=Mapping[str, Any])

SEARCH_SCORE_FIELD = "score"


def get_timestamp() -> int:
    """Current unix time in seconds."""
    return int(time.time())


def _utc(now: Optional[datetime]) -> datetime:
    # Naive datetimes are taken to be UTC.
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _dump(value: Any) -> str:
    try:
        return json_util.dumps(value)
    except (TypeError, ValueError):
        return repr(value)


@dataclass(frozen=True)
class Index:
    """An index declared by a repository and created after connecting."""

    keys: Union[str, Sequence[tuple[str, int]]]
    unique: bool = False


class BaseRepository(Generic[T]):
    """
    Paginated repository over a single collection.

    Subclasses must set ``paginated_field`` and ``paginated_ascending``;
    instantiating one that does not raises DeveloperError.
    """

    collection_name: str = ""
    paginated_field: ClassVar[Optional[str]] = None
    paginated_ascending: ClassVar[Optional[bool]] = None
    indexes: ClassVar[Sequence[Index]] = ()

    def __init__(self, client: DatabaseClient, collection_name: Optional[str] = None):
        if self.paginated_field is None:
            raise DeveloperError(
                f"{type(self).__name__}.paginated_field must be overridden!"
            )
        if self.paginated_ascending is None:
            raise DeveloperError(
                f"{type(self).__name__}.paginated_ascending must be overridden!"
            )

        self.client = client
        self.collection_name = collection_name or self.collection_name
        if not self.collection_name:
            raise DeveloperError(f"{type(self).__name__} has no collection name")

        self._db: Optional[AsyncIOMotorDatabase] = None
        self._collection: Optional[AsyncIOMotorCollection] = None
        self._index_error: Optional[RepositoryError] = None
        self.logger = get_logger(__name__, collection=self.collection_name)

        if self.indexes:
            client.on_connected(self._provision_indexes)

    @property
    def timestamp_field(self) -> str:
        """Field holding the creation time; the pagination key by default."""
        return self.paginated_field

    @property
    def index_error(self) -> Optional[RepositoryError]:
        """Why the declared indexes are missing, if provisioning failed."""
        return self._index_error

    async def get_collection(self) -> AsyncIOMotorCollection:
        """
        Return the collection handle.

        While this repository's indexes are missing, every call retries
        creating them first and raises if that still fails. Other
        repositories on the same client are unaffected.
        """
        collection = await self._bound_collection()
        if self._index_error is not None:
            await self._create_indexes(collection)
            self._index_error = None
        return collection

    async def _bound_collection(self) -> AsyncIOMotorCollection:
        db = await self.client.get_connection()
        if self._collection is None or self._db is not db:
            self._db = db
            self._collection = db[self.collection_name]
        return self._collection

    @contextmanager
    def _wrap_errors(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except StorageError:
            raise
        except Exception as err:
            self.logger.error(
                "Repository operation failed",
                operation=operation,
                error=str(err),
                exc_info=True,
                **context,
            )
            raise RepositoryError.wrap(err) from err

    # -- indexes -----------------------------------------------------------

    async def _provision_indexes(self, db: AsyncIOMotorDatabase) -> None:
        # Failures stay on this repository; the client's connect never sees them.
        try:
            await self._create_indexes(db[self.collection_name])
        except Exception as err:
            self._index_error = RepositoryError.wrap(err)
            self.logger.error(
                "Index provisioning failed",
                operation="ensure_indexes",
                error=str(err),
                exc_info=True,
            )
        else:
            self._index_error = None

    async def _create_indexes(self, collection: AsyncIOMotorCollection) -> None:
        for index in self.indexes:
            await collection.create_index(index.keys, unique=index.unique)
        self.logger.info("Indexes ensured", count=len(self.indexes))

    async def ensure_indexes(self) -> None:
        """Create the declared indexes now (idempotent)."""
        with self._wrap_errors("ensure_indexes"):
            collection = await self._bound_collection()
            await self._create_indexes(collection)
            self._index_error = None

    # -- writes ------------------------------------------------------------

    async def create(self, item: T) -> InsertOneResult:
        self.logger.debug("create", item=_dump(item))
        with self._wrap_errors("create", item=_dump(item)):
            collection = await self.get_collection()
            return await collection.insert_one(item)

    async def create_bulk(self, items: Sequence[T]) -> int:
        """Insert ``items``; returns how many documents were written."""
        items = list(items)
        self.logger.debug("create_bulk", count=len(items))
        if not items:
            return 0

        with self._wrap_errors("create_bulk", count=len(items)):
            collection = await self.get_collection()
            result = await collection.insert_many(items)
            return len(result.inserted_ids)

    async def update(self, api_query: APIQuery, item: Mapping[str, Any], create: bool = False) -> Optional[T]:
        """
        Set the fields of ``item`` on the document matching the query.

        With ``create`` the document is inserted when nothing matches.
        Returns the document as it is after the update.
        """
        context = {"query": _dump(api_query.query), "item": _dump(item)}
        self.logger.debug("update", upsert=create, **context)
        with self._wrap_errors("update", **context):
            collection = await self.get_collection()
            return await collection.find_one_and_update(
                api_query.query,
                {"$set": dict(item)},
                upsert=create,
                return_document=ReturnDocument.AFTER,
            )

    async def delete_one(self, api_query: APIQuery) -> DeleteResult:
        self.logger.debug("delete_one", query=_dump(api_query.query))
        with self._wrap_errors("delete_one", query=_dump(api_query.query)):
            collection = await self.get_collection()
            return await collection.delete_one(api_query.query)

    async def find_one_or_create(self, api_query: APIQuery, created_by: str) -> T:
        """
        Return the match for the query, inserting it if absent.

        Only creation metadata is written, and only on insert, so an
        existing document is returned untouched.
        """
        self.logger.debug("find_one_or_create", query=_dump(api_query.query))
        with self._wrap_errors("find_one_or_create", query=_dump(api_query.query)):
            collection = await self.get_collection()
            return await collection.find_one_and_update(
                api_query.query,
                {"$setOnInsert": {"createdOn": get_timestamp(), "createdBy": created_by}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )

    # -- reads -------------------------------------------------------------

    async def count(self, query: Mapping[str, Any]) -> int:
        with self._wrap_errors("count", query=_dump(query)):
            collection = await self.get_collection()
            return await collection.count_documents(dict(query))

    async def count_total(self) -> int:
        return await self.count({})

    async def count_by_date_range(self, start: int, end: int) -> int:
        """Documents whose timestamp falls in [start, end)."""
        return await self.count({self.timestamp_field: {"$gte": start, "$lt": end}})

    async def count_by_date(self, day: Union[str, date]) -> int:
        """Documents created on one UTC calendar day (``YYYY-MM-DD``)."""
        if isinstance(day, str):
            try:
                day = date.fromisoformat(day)
            except ValueError as err:
                raise RepositoryError(f"Invalid date: {day}", cause=err) from err

        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        return await self.count_by_date_range(int(start.timestamp()), int(end.timestamp()))

    async def count_by_month_to_date(self, now: Optional[datetime] = None) -> int:
        """Documents created since the start of the current UTC month."""
        now = _utc(now)
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return await self.count_by_date_range(int(start.timestamp()), int(now.timestamp()) + 1)

    async def count_by_rolling_hours(self, hours: int, now: Optional[datetime] = None) -> int:
        return await self._count_since(timedelta(hours=hours), now)

    async def count_by_rolling_days(self, days: int, now: Optional[datetime] = None) -> int:
        return await self._count_since(timedelta(days=days), now)

    async def _count_since(self, window: timedelta, now: Optional[datetime]) -> int:
        if window <= timedelta(0):
            raise RepositoryError("Rolling window must be positive")
        now = _utc(now)
        return await self.count_by_date_range(
            int((now - window).timestamp()), int(now.timestamp()) + 1
        )

    async def distinct(self, field: str) -> list[Any]:
        self.logger.debug("distinct", field=field)
        with self._wrap_errors("distinct", field=field):
            collection = await self.get_collection()
            return await collection.distinct(field)

    async def exists(self, api_query: APIQuery) -> bool:
        """True if any document matches; an empty query is rejected."""
        self.logger.debug("exists", query=_dump(api_query.query))
        if api_query.is_empty:
            raise RepositoryError("Invalid query for exists")

        with self._wrap_errors("exists", query=_dump(api_query.query)):
            return await self._any(api_query.query)

    async def exists_or(self, obj: Mapping[str, Any], *fields: str) -> bool:
        """True if a document matches any of ``fields`` as set on ``obj``."""
        clauses = [{name: obj[name]} for name in fields if name in obj]
        if not clauses:
            raise RepositoryError("Invalid query for exists_or")

        query = {"$or": clauses}
        self.logger.debug("exists_or", query=_dump(query))
        with self._wrap_errors("exists_or", query=_dump(query)):
            return await self._any(query)

    async def _any(self, query: Mapping[str, Any]) -> bool:
        collection = await self.get_collection()
        found = await collection.find(query, {ID_FIELD: 1}, limit=1).to_list(length=1)
        return len(found) > 0

    async def find_one(self, api_query: APIQuery) -> Optional[T]:
        context = {"query": _dump(api_query.query), "fields": _dump(api_query.fields)}
        self.logger.debug("find_one", **context)
        with self._wrap_errors("find_one", **context):
            collection = await self.get_collection()
            return await collection.find_one(api_query.query, api_query.fields or None)

    async def find(self, api_query: APIQuery) -> MongoPagedResult:
        """Filtered, projected page sorted on the pagination key."""
        context = self._paging_context(api_query)
        self.logger.debug("find", **context)

        backwards = bool(api_query.previous)
        with self._wrap_errors("find", **context):
            cursor_filter = self._cursor_filter(api_query)
            query = merge_filters(api_query.query, cursor_filter)
            projection, hidden = ensure_projected(
                api_query.fields, (self.paginated_field, ID_FIELD)
            )
            collection = await self.get_collection()
            documents = await collection.find(
                query,
                projection,
                sort=build_sort(self.paginated_field, self.paginated_ascending, backwards),
                limit=api_query.limit + 1,
            ).to_list(length=None)

        page = self._page(documents, api_query, self.paginated_field)
        strip_fields(page.results, hidden)
        return page

    async def aggregate(self, api_query: APIQuery) -> list[dict[str, Any]]:
        self.logger.debug("aggregate", pipeline=_dump(api_query.pipeline))
        with self._wrap_errors("aggregate", pipeline=_dump(api_query.pipeline)):
            collection = await self.get_collection()
            return await collection.aggregate(api_query.pipeline).to_list(length=None)

    async def aggregate_paging(self, api_query: APIQuery) -> MongoPagedResult:
        """
        Run the caller's pipeline and page its output.

        The cursor match, sort and limit stages are appended after the
        caller's stages. A pipeline that carries its own $limit or $sort
        therefore pages over an already truncated or reordered set and
        returns wrong pages; such pipelines are not supported.
        """
        context = self._paging_context(api_query)
        self.logger.debug("aggregate_paging", **context)

        backwards = bool(api_query.previous)
        with self._wrap_errors("aggregate_paging", **context):
            pipeline = api_query.pipeline
            cursor_filter = self._cursor_filter(api_query)
            if cursor_filter:
                pipeline.append({"$match": cursor_filter})
            pipeline.append(
                {"$sort": dict(build_sort(self.paginated_field, self.paginated_ascending, backwards))}
            )
            pipeline.append({"$limit": api_query.limit + 1})

            collection = await self.get_collection()
            documents = await collection.aggregate(pipeline).to_list(length=None)

        return self._page(documents, api_query, self.paginated_field)

    async def search(self, api_query: APIQuery) -> MongoPagedResult:
        """
        Full-text search within the filtered set, best matches first.

        Pages are keyed on the text score, and each result carries its
        ``score``. The collection needs a text index.
        """
        context = self._paging_context(api_query)
        context["search"] = api_query.search
        self.logger.debug("search", **context)
        if not api_query.search:
            raise RepositoryError("Invalid query for search")

        backwards = bool(api_query.previous)
        with self._wrap_errors("search", **context):
            match = dict(api_query.query)
            match["$text"] = {"$search": api_query.search}
            pipeline: list[dict[str, Any]] = [
                {"$match": match},
                {"$addFields": {SEARCH_SCORE_FIELD: {"$meta": "textScore"}}},
            ]
            token = api_query.previous or api_query.next
            if token:
                pipeline.append(
                    {"$match": build_cursor_filter(SEARCH_SCORE_FIELD, False, token, backwards)}
                )
            pipeline.append({"$sort": dict(build_sort(SEARCH_SCORE_FIELD, False, backwards))})
            pipeline.append({"$limit": api_query.limit + 1})

            projection, _ = ensure_projected(api_query.fields, (SEARCH_SCORE_FIELD, ID_FIELD))
            if projection:
                pipeline.append({"$project": projection})

            collection = await self.get_collection()
            documents = await collection.aggregate(pipeline).to_list(length=None)

        return self._page(documents, api_query, SEARCH_SCORE_FIELD)

    # -- paging helpers ----------------------------------------------------

    def _cursor_filter(self, api_query: APIQuery) -> Optional[dict[str, Any]]:
        token = api_query.previous or api_query.next
        if not token:
            return None
        return build_cursor_filter(
            self.paginated_field,
            self.paginated_ascending,
            token,
            backwards=bool(api_query.previous),
        )

    def _page(self, documents: list[dict[str, Any]], api_query: APIQuery, paginated_field: str) -> MongoPagedResult:
        return prepare_response(
            documents,
            limit=api_query.limit,
            paginated_field=paginated_field,
            next=api_query.next,
            previous=api_query.previous,
        )

    def _paging_context(self, api_query: APIQuery) -> dict[str, Any]:
        return {
            "query": _dump(api_query.query),
            "fields": _dump(api_query.fields),
            "paginated_field": self.paginated_field,
            "ascending": self.paginated_ascending,
            "limit": api_query.limit,
            "next": api_query.next,
            "previous": api_query.previous,
        }
