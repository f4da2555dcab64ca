# Pydantic schemas

from datetime import datetime
from typing import Annotated, Any, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

MAX_PROPERTY_KEYS = 50
MAX_STRING_LENGTH = 1000
MAX_ARRAY_LENGTH = 100
EVENT_NAME_PATTERN = r"^[a-zA-Z0-9_.-]+$"

PropertyString = Annotated[str, StringConstraints(max_length=MAX_STRING_LENGTH)]
PropertyScalar = Union[bool, int, float, PropertyString]
PropertyArray = Annotated[list[PropertyScalar], Field(max_length=MAX_ARRAY_LENGTH)]
PropertyValue = Union[PropertyScalar, PropertyArray, None]


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventCreate(CamelModel):
    """Schema for creating a single event"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=255, pattern=EVENT_NAME_PATTERN)
    properties: dict[str, PropertyValue] = Field(default_factory=dict, max_length=MAX_PROPERTY_KEYS)
    session_id: str | None = Field(default=None, max_length=255)
    principal_id: str | None = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("principalId", "userId", "principal_id"),
    )
    # Parsed leniently at ingestion; unparseable values fall back to ingestion time
    timestamp: str | datetime | None = None

    @field_validator('properties', mode='before')
    @classmethod
    def default_properties(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator('session_id', 'principal_id', mode='before')
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class EventResponse(CamelModel):
    """A stored event"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    name: str
    properties: dict[str, Any]
    session_id: str | None
    principal_id: str | None
    occurred_at: datetime
    created_at: datetime | None = None


class EventListResponse(CamelModel):
    events: list[EventResponse]
    count: int
    offset: int
    limit: int


class EventIngestResponse(CamelModel):
    event_id: int


class BatchItemSuccess(CamelModel):
    index: int
    event_id: int


class BatchItemFailure(CamelModel):
    index: int
    reason: str


class BatchIngestResponse(CamelModel):
    """Response for batch ingestion, index-aligned with the request"""

    event_ids: list[int | None]
    count: int
    sessions_updated: int
    succeeded: list[BatchItemSuccess]
    failed: list[BatchItemFailure]


class SessionResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    started_at: datetime
    last_activity_at: datetime
    event_count: int
