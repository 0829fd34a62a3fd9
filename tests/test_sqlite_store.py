"""Tests for the SQLite store's conditional issue updates."""

import pytest


class TestConditionalUpdate:
    def test_matching_status_updates(self, store, make_issue):
        issue = make_issue()

        assert store.update_issue(issue.id, expected_status=["open"], status="ai_running") is True
        assert store.get_issue(issue.id).status == "ai_running"

    def test_other_status_is_left_alone(self, store, make_issue):
        issue = make_issue(status="ai_running")

        assert store.update_issue(issue.id, expected_status=["open"], status="ai_running") is False
        assert store.update_issue(issue.id, expected_status=["open", "closed"], title="Renamed") is False
        saved = store.get_issue(issue.id)
        assert saved.status == "ai_running"
        assert saved.title == "Null pointer on login"

    def test_second_lock_loses(self, store, make_issue):
        issue = make_issue()

        first = store.update_issue(issue.id, expected_status=["open"], status="ai_running")
        second = store.update_issue(issue.id, expected_status=["open"], status="ai_running")

        assert (first, second) == (True, False)

    def test_unknown_issue(self, store):
        assert store.update_issue("missing", status="closed") is False

    def test_unknown_column_rejected(self, store, make_issue):
        issue = make_issue()
        with pytest.raises(ValueError, match="Unknown issue fields"):
            store.update_issue(issue.id, colour="red")
