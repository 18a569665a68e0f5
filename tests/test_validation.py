"""Tests for boundary validation helpers."""

import pytest

from feedsync.exceptions import ValidationError
from feedsync.models.enums import FeedType, SyncStatus, SyncType, TriggeredBy
from feedsync.services.validation import (
    validate_feed_type,
    validate_id,
    validate_non_empty_string,
    validate_pagination,
    validate_sync_request_type,
    validate_sync_status,
    validate_triggered_by,
)


class TestValidateId:

    def test_positive_int(self):
        assert validate_id(5) == 5

    @pytest.mark.parametrize("value", [0, -1, "1", 1.0, True, None])
    def test_rejects_non_positive_or_non_int(self, value):
        with pytest.raises(ValidationError):
            validate_id(value)


class TestValidateStrings:

    def test_strips(self):
        assert validate_non_empty_string("  name ") == "name"

    @pytest.mark.parametrize("value", ["", "   ", None, 3])
    def test_rejects_blank_or_non_string(self, value):
        with pytest.raises(ValidationError):
            validate_non_empty_string(value, "name")


class TestValidateEnums:

    def test_accepts_values_and_members(self):
        assert validate_feed_type("PROJECT_DETAIL") == FeedType.PROJECT_DETAIL
        assert validate_feed_type(FeedType.PROJECTS) == FeedType.PROJECTS
        assert validate_sync_status("FAILED") == SyncStatus.FAILED
        assert validate_triggered_by("VERSION_BUMP") == TriggeredBy.VERSION_BUMP

    def test_rejects_unknown_with_choices(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_feed_type("INVOICES")
        assert "PROJECT_DETAIL" in exc_info.value.message

    def test_rejects_lowercase(self):
        with pytest.raises(ValidationError):
            validate_triggered_by("manual")

    def test_sync_request_type_expands_all(self):
        assert validate_sync_request_type("ALL") == [SyncType.PROJECTS, SyncType.OPPORTUNITIES, SyncType.SERVICE_TICKETS]
        assert validate_sync_request_type("OPPORTUNITIES") == [SyncType.OPPORTUNITIES]

    def test_detail_is_not_a_sync_type(self):
        with pytest.raises(ValidationError):
            validate_sync_request_type("PROJECT_DETAIL")


class TestValidatePagination:

    def test_defaults(self):
        assert validate_pagination(None, None) == (50, 0)

    @pytest.mark.parametrize("limit, offset", [(0, 0), (501, 0), (10, -1), (True, 0)])
    def test_rejects_out_of_range(self, limit, offset):
        with pytest.raises(ValidationError):
            validate_pagination(limit, offset)
