"""
Typed Query and Update Requests

Every query and update is a tagged variant discriminated by ``queryType`` /
``updateType``. Node types are checked against the closed vocabulary and
field names against an identifier pattern, so a request that validates can
always be rendered into backend query text.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ckg.exceptions import ValidationError
from ckg.graph.models import (
    ConfigType,
    EventType,
    NodeType,
    Scope,
    ScopeContext,
    parse_timestamp,
)
from ckg.graph.schema import IDENTIFIER_PATTERN


Identifier = Annotated[str, StringConstraints(pattern=IDENTIFIER_PATTERN)]
EntityId = Annotated[str, StringConstraints(min_length=1, max_length=256)]
FilterValue = Union[str, int, float, bool]

ContextCategory = Literal["rules", "workflow", "persona", "code_snippets"]
AggregateFunction = Literal["count", "min", "max", "sum", "avg"]


class RequestModel(BaseModel):
    """Base for wire models: camelCase aliases, unknown keys rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class CacheOptions(RequestModel):
    use_cache: bool = True
    ttl_seconds: int | None = Field(default=None, gt=0)


# ============================================================================
# Query parameters
# ============================================================================


class GetNodeByIdParams(RequestModel):
    node_type: NodeType
    id: EntityId


class FindNodesByLabelParams(RequestModel):
    label: NodeType
    filter: dict[Identifier, FilterValue] = Field(default_factory=dict)
    limit: int = Field(default=10, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class FindRelatedNodesParams(RequestModel):
    node_type: NodeType
    node_id: EntityId
    relation_type: Identifier | None = None
    target_type: NodeType | None = None
    limit: int = Field(default=50, ge=1, le=1000)


class KeywordSearchParams(RequestModel):
    types: list[NodeType] = Field(..., min_length=1)
    keyword: str = Field(..., min_length=1)
    fields: list[Identifier] | None = None
    limit: int = Field(default=10, ge=1, le=1000)


class VectorSearchParams(RequestModel):
    vector: list[float] = Field(..., min_length=1)
    field: Identifier
    types: list[NodeType] = Field(..., min_length=1)
    limit: int = Field(default=10, ge=1, le=1000)


class TraversePathParams(RequestModel):
    start_node_id: EntityId
    end_node_id: EntityId
    relation_types: list[Identifier] | None = None
    max_depth: int = Field(default=3, ge=1, le=10)


class AggregateDataParams(RequestModel):
    node_type: NodeType
    group_by: Identifier
    aggregate_field: Identifier
    aggregate_function: AggregateFunction


class ResolveConfigByScopeParams(RequestModel):
    context_scope: ScopeContext
    needed_context: list[ContextCategory] = Field(..., min_length=1)
    compositional_categories: list[str] | None = None


class FindTimeRelatedEventsParams(RequestModel):
    start_time: datetime
    end_time: datetime
    event_types: list[EventType] | None = None
    entity_types: list[str] | None = None

    @model_validator(mode="after")
    def check_window(self) -> FindTimeRelatedEventsParams:
        # naive datetimes are read as UTC
        if parse_timestamp(self.end_time) < parse_timestamp(self.start_time):
            raise ValueError("endTime must not precede startTime")
        return self


class GetEntityHistoryParams(RequestModel):
    entity_id: EntityId
    entity_type: str = Field(..., min_length=1)
    start_time: datetime | None = None
    end_time: datetime | None = None


# ============================================================================
# Query variants
# ============================================================================


class BaseQuery(RequestModel):
    required_properties: list[Identifier] | None = None
    cache_options: CacheOptions = Field(default_factory=CacheOptions)


class GetNodeByIdQuery(BaseQuery):
    query_type: Literal["getNodeById"]
    parameters: GetNodeByIdParams


class FindNodesByLabelQuery(BaseQuery):
    query_type: Literal["findNodesByLabel"]
    parameters: FindNodesByLabelParams


class FindRelatedNodesQuery(BaseQuery):
    query_type: Literal["findRelatedNodes"]
    parameters: FindRelatedNodesParams


class KeywordSearchQuery(BaseQuery):
    query_type: Literal["keywordSearch"]
    parameters: KeywordSearchParams


class VectorSearchQuery(BaseQuery):
    query_type: Literal["vectorSearch"]
    parameters: VectorSearchParams


class TraversePathQuery(BaseQuery):
    query_type: Literal["traversePath"]
    parameters: TraversePathParams


class AggregateDataQuery(BaseQuery):
    query_type: Literal["aggregateData"]
    parameters: AggregateDataParams


class ResolveConfigByScopeQuery(BaseQuery):
    query_type: Literal["resolveConfigByScope"]
    parameters: ResolveConfigByScopeParams


class FindTimeRelatedEventsQuery(BaseQuery):
    query_type: Literal["findTimeRelatedEvents"]
    parameters: FindTimeRelatedEventsParams


class GetEntityHistoryQuery(BaseQuery):
    query_type: Literal["getEntityHistory"]
    parameters: GetEntityHistoryParams


QueryRequest = Annotated[
    Union[
        GetNodeByIdQuery,
        FindNodesByLabelQuery,
        FindRelatedNodesQuery,
        KeywordSearchQuery,
        VectorSearchQuery,
        TraversePathQuery,
        AggregateDataQuery,
        ResolveConfigByScopeQuery,
        FindTimeRelatedEventsQuery,
        GetEntityHistoryQuery,
    ],
    Field(discriminator="query_type"),
]

QUERY_TYPES = frozenset(
    {
        "getNodeById",
        "findNodesByLabel",
        "findRelatedNodes",
        "keywordSearch",
        "vectorSearch",
        "traversePath",
        "aggregateData",
        "resolveConfigByScope",
        "findTimeRelatedEvents",
        "getEntityHistory",
    }
)


# ============================================================================
# Update parameters
# ============================================================================


class CreateNodeParams(RequestModel):
    node_type: NodeType
    properties: dict[str, Any]


class UpdateNodePropertiesParams(RequestModel):
    node_type: NodeType
    node_id: EntityId
    properties: dict[str, Any] = Field(..., min_length=1)


class RelationshipParams(RequestModel):
    from_type: NodeType
    from_id: EntityId
    relation_type: Identifier
    to_type: NodeType
    to_id: EntityId


class DeleteNodeParams(RequestModel):
    node_type: NodeType
    node_id: EntityId


class CreateScopedConfigParams(RequestModel):
    config_type: ConfigType
    scope: Scope
    scope_entity_id: EntityId | None = None
    config_data: dict[str, Any]

    @model_validator(mode="after")
    def check_scope_entity(self) -> CreateScopedConfigParams:
        if self.scope is Scope.DEFAULT and self.scope_entity_id is not None:
            raise ValueError("scopeEntityId must be omitted for scope DEFAULT")
        if self.scope is not Scope.DEFAULT and self.scope_entity_id is None:
            raise ValueError(f"scopeEntityId is required for scope {self.scope.value}")
        return self


class CreateTimePointParams(RequestModel):
    entity_id: EntityId
    entity_type: str = Field(..., min_length=1)
    event_type: EventType
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


# ============================================================================
# Update variants
# ============================================================================


class CreateNodeUpdate(RequestModel):
    update_type: Literal["createNode"]
    parameters: CreateNodeParams


class UpdateNodePropertiesUpdate(RequestModel):
    update_type: Literal["updateNodeProperties"]
    parameters: UpdateNodePropertiesParams


class CreateRelationshipUpdate(RequestModel):
    update_type: Literal["createRelationship"]
    parameters: RelationshipParams


class DeleteRelationshipUpdate(RequestModel):
    update_type: Literal["deleteRelationship"]
    parameters: RelationshipParams


class DeleteNodeUpdate(RequestModel):
    update_type: Literal["deleteNode"]
    parameters: DeleteNodeParams


class CreateScopedConfigUpdate(RequestModel):
    update_type: Literal["createScopedConfig"]
    parameters: CreateScopedConfigParams


class CreateTimePointUpdate(RequestModel):
    update_type: Literal["createTimePoint"]
    parameters: CreateTimePointParams


SingleUpdateRequest = Annotated[
    Union[
        CreateNodeUpdate,
        UpdateNodePropertiesUpdate,
        CreateRelationshipUpdate,
        DeleteRelationshipUpdate,
        DeleteNodeUpdate,
        CreateScopedConfigUpdate,
        CreateTimePointUpdate,
    ],
    Field(discriminator="update_type"),
]


class BatchUpdateParams(RequestModel):
    operations: list[SingleUpdateRequest] = Field(..., min_length=1)
    commit_now: bool = True


class BatchUpdate(RequestModel):
    update_type: Literal["batchUpdate"]
    parameters: BatchUpdateParams


UpdateRequest = Annotated[
    Union[
        CreateNodeUpdate,
        UpdateNodePropertiesUpdate,
        CreateRelationshipUpdate,
        DeleteRelationshipUpdate,
        DeleteNodeUpdate,
        CreateScopedConfigUpdate,
        CreateTimePointUpdate,
        BatchUpdate,
    ],
    Field(discriminator="update_type"),
]

UPDATE_TYPES = frozenset(
    {
        "createNode",
        "updateNodeProperties",
        "createRelationship",
        "deleteRelationship",
        "deleteNode",
        "createScopedConfig",
        "createTimePoint",
        "batchUpdate",
    }
)


class DependencyAnalysisRequest(BaseModel):
    """Input of the dependency-analysis contract (snake_case on the wire)."""

    model_config = ConfigDict(extra="forbid")

    parent_task_id: EntityId


_QUERY_ADAPTER: TypeAdapter[Any] = TypeAdapter(QueryRequest)
_UPDATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(UpdateRequest)


def _failures(error: PydanticValidationError) -> list[str]:
    failures = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        failures.append(f"{location}: {item['msg']}" if location else item["msg"])
    return failures


def _operation_name(raw: Any, key: str, fallback: str) -> str:
    if isinstance(raw, dict) and isinstance(raw.get(key), str):
        return raw[key]
    return fallback


def parse_query(raw: Any) -> Any:
    """Validate a raw query mapping into its typed variant.

    Raises:
        ValidationError: If the request violates its contract
    """
    if isinstance(raw, BaseQuery):
        return raw
    try:
        return _QUERY_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            _operation_name(raw, "queryType", "query"), _failures(e)
        ) from e


def parse_update(raw: Any) -> Any:
    """Validate a raw update mapping into its typed variant.

    Raises:
        ValidationError: If the request violates its contract
    """
    if isinstance(raw, RequestModel) and hasattr(raw, "update_type"):
        return raw
    try:
        return _UPDATE_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            _operation_name(raw, "updateType", "update"), _failures(e)
        ) from e
