"""
Normalized API query.

Controllers parse request parameters into an APIQuery; repositories only
ever consume this canonical shape. Normalization covers the page size
bounds, projection shorthand and the next/previous cursor exclusivity.
"""

import json
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from core.config import get_settings


Filter = dict[str, Any]
Pipeline = list[dict[str, Any]]


class APIQuery(BaseModel):
    """
    Canonical query handed to a repository.

    ``query`` is a filter mapping for find-style operations, or an
    aggregation pipeline for ``aggregate`` and ``aggregate_paging``.
    """

    query: Union[Filter, Pipeline] = Field(default_factory=dict)
    fields: dict[str, Any] = Field(default_factory=dict)
    search: Optional[str] = None
    limit: int = Field(default=None, validate_default=True)
    next: Optional[str] = None
    previous: Optional[str] = None

    @field_validator("query", mode="before")
    @classmethod
    def _parse_query(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    @field_validator("fields", mode="before")
    @classmethod
    def _parse_fields(cls, value: Any) -> Any:
        if not value:
            return {}
        if isinstance(value, str):
            value = [name.strip() for name in value.split(",")]
        if isinstance(value, (list, tuple, set)):
            return {name: 1 for name in value if name}
        return value

    @field_validator("search", "next", "previous", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
        return value or None

    @field_validator("limit", mode="before")
    @classmethod
    def _bound_limit(cls, value: Any) -> int:
        settings = get_settings()
        if value is None or value == "":
            return settings.pagination_default
        limit = int(value)
        if limit < 1:
            return settings.pagination_default
        return min(limit, settings.pagination_max)

    @model_validator(mode="after")
    def _single_cursor(self) -> "APIQuery":
        if self.next and self.previous:
            raise ValueError("Only one of 'next' or 'previous' may be set")
        return self

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "APIQuery":
        """Build a query from flat request parameters, ignoring unknown keys."""
        known = {name: params[name] for name in cls.model_fields if name in params}
        return cls.model_validate(known)

    @property
    def is_empty(self) -> bool:
        """True when the query has no filterable keys."""
        return not self.query

    @property
    def pipeline(self) -> Pipeline:
        """The query as an aggregation pipeline."""
        if isinstance(self.query, list):
            return list(self.query)
        return [{"$match": self.query}] if self.query else []

    def with_filter(self, extra: Filter) -> "APIQuery":
        """Return a copy whose filter also requires ``extra``."""
        if isinstance(self.query, list):
            query: Union[Filter, Pipeline] = [{"$match": extra}] + self.query
        elif self.query:
            query = {"$and": [self.query, extra]}
        else:
            query = dict(extra)
        return self.model_copy(update={"query": query})
