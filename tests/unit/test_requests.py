"""Unit tests for typed query and update requests."""

import pytest

from ckg.exceptions import ValidationError
from ckg.graph.models import NodeType, Scope
from ckg.graph.requests import (
    BatchUpdate,
    CreateScopedConfigUpdate,
    FindNodesByLabelQuery,
    GetNodeByIdQuery,
    parse_query,
    parse_update,
)


class TestParseQuery:
    """Test query validation."""

    def test_get_node_by_id(self):
        """Test a well-formed getNodeById query."""
        query = parse_query(
            {
                "queryType": "getNodeById",
                "parameters": {"nodeType": "Task", "id": "t1"},
                "requiredProperties": ["title"],
            }
        )

        assert isinstance(query, GetNodeByIdQuery)
        assert query.parameters.node_type is NodeType.TASK
        assert query.required_properties == ["title"]
        assert query.cache_options.use_cache is True

    def test_defaults_applied(self):
        """Test parameter defaults for findNodesByLabel."""
        query = parse_query({"queryType": "findNodesByLabel", "parameters": {"label": "Rule"}})

        assert isinstance(query, FindNodesByLabelQuery)
        assert query.parameters.limit == 10
        assert query.parameters.offset == 0
        assert query.parameters.filter == {}

    def test_cache_options(self):
        """Test cacheOptions wire names."""
        query = parse_query(
            {
                "queryType": "getNodeById",
                "parameters": {"nodeType": "Task", "id": "t1"},
                "cacheOptions": {"useCache": False, "ttlSeconds": 30},
            }
        )

        assert query.cache_options.use_cache is False
        assert query.cache_options.ttl_seconds == 30

    def test_unknown_query_type(self):
        """Test unknown queryType is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            parse_query({"queryType": "dropEverything", "parameters": {}})

        assert exc_info.value.operation == "dropEverything"

    def test_unknown_node_type(self):
        """Test node types outside the vocabulary are rejected."""
        with pytest.raises(ValidationError):
            parse_query(
                {"queryType": "getNodeById", "parameters": {"nodeType": "Spaceship", "id": "x"}}
            )

    def test_filter_key_must_be_identifier(self):
        """Test filter keys cannot smuggle query text."""
        with pytest.raises(ValidationError) as exc_info:
            parse_query(
                {
                    "queryType": "findNodesByLabel",
                    "parameters": {"label": "Task", "filter": {"status) OR has(x": "a"}},
                }
            )

        assert any("filter" in failure for failure in exc_info.value.failures)

    def test_missing_required_parameter(self):
        """Test missing parameters fail fast."""
        with pytest.raises(ValidationError):
            parse_query({"queryType": "keywordSearch", "parameters": {"types": ["Task"]}})

    def test_time_window_order(self):
        """Test endTime must not precede startTime."""
        with pytest.raises(ValidationError):
            parse_query(
                {
                    "queryType": "findTimeRelatedEvents",
                    "parameters": {
                        "startTime": "2026-01-02T00:00:00Z",
                        "endTime": "2026-01-01T00:00:00Z",
                    },
                }
            )

    def test_time_window_mixed_offsets(self):
        """Test a naive bound is compared as UTC against an aware one."""
        query = parse_query(
            {
                "queryType": "findTimeRelatedEvents",
                "parameters": {
                    "startTime": "2026-01-01T00:00:00",
                    "endTime": "2026-01-01T00:00:00Z",
                },
            }
        )
        assert query.parameters.start_time.tzinfo is None

        with pytest.raises(ValidationError):
            parse_query(
                {
                    "queryType": "findTimeRelatedEvents",
                    "parameters": {
                        "startTime": "2026-01-01T12:00:00",
                        "endTime": "2026-01-01T13:00:00+02:00",
                    },
                }
            )

    def test_traverse_depth_bounds(self):
        """Test maxDepth is bounded."""
        with pytest.raises(ValidationError):
            parse_query(
                {
                    "queryType": "traversePath",
                    "parameters": {"startNodeId": "a", "endNodeId": "b", "maxDepth": 50},
                }
            )

    def test_needed_context_values(self):
        """Test neededContext accepts only known categories."""
        with pytest.raises(ValidationError):
            parse_query(
                {
                    "queryType": "resolveConfigByScope",
                    "parameters": {"contextScope": {}, "neededContext": ["secrets"]},
                }
            )

    def test_non_mapping_request(self):
        """Test a request that is not an object."""
        with pytest.raises(ValidationError) as exc_info:
            parse_query(["getNodeById"])

        assert exc_info.value.operation == "query"


class TestParseUpdate:
    """Test update validation."""

    def test_scoped_config_requires_entity(self):
        """Test non-DEFAULT scopes need scopeEntityId."""
        with pytest.raises(ValidationError) as exc_info:
            parse_update(
                {
                    "updateType": "createScopedConfig",
                    "parameters": {
                        "configType": "Rule",
                        "scope": "PROJECT",
                        "configData": {"name": "r"},
                    },
                }
            )

        assert "scopeEntityId is required" in str(exc_info.value)

    def test_default_scope_forbids_entity(self):
        """Test DEFAULT scope must not carry scopeEntityId."""
        with pytest.raises(ValidationError):
            parse_update(
                {
                    "updateType": "createScopedConfig",
                    "parameters": {
                        "configType": "Rule",
                        "scope": "DEFAULT",
                        "scopeEntityId": "p1",
                        "configData": {"name": "r"},
                    },
                }
            )

    def test_default_scope(self):
        """Test a valid DEFAULT scoped config."""
        update = parse_update(
            {
                "updateType": "createScopedConfig",
                "parameters": {
                    "configType": "Persona",
                    "scope": "DEFAULT",
                    "configData": {"name": "reviewer"},
                },
            }
        )

        assert isinstance(update, CreateScopedConfigUpdate)
        assert update.parameters.scope is Scope.DEFAULT

    def test_batch_parsed(self):
        """Test a batch of mixed operations."""
        update = parse_update(
            {
                "updateType": "batchUpdate",
                "parameters": {
                    "operations": [
                        {
                            "updateType": "createNode",
                            "parameters": {"nodeType": "Task", "properties": {"title": "a"}},
                        },
                        {
                            "updateType": "deleteNode",
                            "parameters": {"nodeType": "Task", "nodeId": "t1"},
                        },
                    ],
                    "commitNow": False,
                },
            }
        )

        assert isinstance(update, BatchUpdate)
        assert len(update.parameters.operations) == 2
        assert update.parameters.commit_now is False

    def test_batch_rejected_as_whole(self):
        """Test one malformed operation rejects the batch."""
        with pytest.raises(ValidationError) as exc_info:
            parse_update(
                {
                    "updateType": "batchUpdate",
                    "parameters": {
                        "operations": [
                            {
                                "updateType": "createNode",
                                "parameters": {"nodeType": "Task", "properties": {}},
                            },
                            {"updateType": "deleteNode", "parameters": {"nodeType": "Task"}},
                        ]
                    },
                }
            )

        assert exc_info.value.operation == "batchUpdate"

    def test_nested_batch_rejected(self):
        """Test batches cannot contain batches."""
        with pytest.raises(ValidationError):
            parse_update(
                {
                    "updateType": "batchUpdate",
                    "parameters": {
                        "operations": [
                            {"updateType": "batchUpdate", "parameters": {"operations": []}}
                        ]
                    },
                }
            )

    def test_relation_type_identifier(self):
        """Test relation names must be identifiers."""
        with pytest.raises(ValidationError):
            parse_update(
                {
                    "updateType": "createRelationship",
                    "parameters": {
                        "fromType": "Task",
                        "fromId": "a",
                        "relationType": "child tasks",
                        "toType": "Task",
                        "toId": "b",
                    },
                }
            )

    def test_empty_update_properties(self):
        """Test updateNodeProperties needs at least one property."""
        with pytest.raises(ValidationError):
            parse_update(
                {
                    "updateType": "updateNodeProperties",
                    "parameters": {"nodeType": "Task", "nodeId": "a", "properties": {}},
                }
            )
