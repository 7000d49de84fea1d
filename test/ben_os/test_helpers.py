"""
Tests for query parsing, pagination envelopes and ID validation.
"""

import uuid

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.helpers import ValidationErrors, is_valid_uuid, paginated, parse_query_params


class TestParseQueryParams:

    def test_defaults(self):
        params = parse_query_params({})
        assert (params.limit, params.offset) == (50, 0)
        assert params.status is None and params.search is None

    def test_limit_capped_and_invalid_values_reset(self):
        assert parse_query_params({"limit": "500"}).limit == 100
        assert parse_query_params({"limit": "abc"}).limit == 50
        assert parse_query_params({"limit": "0"}).limit == 50
        assert parse_query_params({"offset": "-3"}).offset == 0
        assert parse_query_params({"offset": "x"}).offset == 0

    def test_comma_lists(self):
        params = parse_query_params({"status": "todo, done", "priority": "high"})
        assert params.status == ["todo", "done"]
        assert params.priority == ["high"]

    def test_empty_strings_are_none(self):
        params = parse_query_params({"search": "", "board_id": ""})
        assert params.search is None and params.board_id is None


class TestEnvelopes:

    def test_paginated_has_more(self):
        body = paginated([1, 2], total=5, limit=2, offset=0)
        assert body["pagination"] == {"total": 5, "limit": 2, "offset": 0, "hasMore": True}
        assert paginated([5], total=5, limit=2, offset=4)["pagination"]["hasMore"] is False

    def test_uuid_validation(self):
        assert is_valid_uuid(str(uuid.uuid4()))
        assert is_valid_uuid(str(uuid.uuid4()).upper())
        assert not is_valid_uuid("not-a-uuid")
        assert not is_valid_uuid(None)

    def test_messages(self):
        assert ValidationErrors.missing_required_field("title") == "Missing required field: title"
        assert ValidationErrors.invalid_status(["a", "b"]) == "Invalid status. Valid values: a, b"
        assert ValidationErrors.not_found("Task") == "Task not found"
