"""
Config store and event log tests.
"""

import pytest

from invman.errors import PermissionDenied
from invman.models import EventAction
from invman.services import config_service, event_service


class TestConfig:

    def test_defaults_seeded(self, app):
        assert config_service.get_bool("allow_registration") is True
        assert config_service.get_int("session_ttl_minutes", 0) == 1440

    def test_missing_values_fall_back(self, app):
        assert config_service.get_config("nope") is None
        assert config_service.get_config("nope", "x") == "x"
        assert config_service.get_bool("nope", default=True) is True
        assert config_service.get_int("nope", 5) == 5

    def test_non_numeric_int_falls_back(self, app):
        config_service.set_config("session_ttl_minutes", "forever")
        assert config_service.get_int("session_ttl_minutes", 60) == 60

    def test_set_with_principal_requires_config_w(self, admin, member):
        with pytest.raises(PermissionDenied):
            config_service.set_config("allow_registration", "false", principal=member)

        entry = config_service.set_config("allow_registration", "false", principal=admin)
        assert entry.value == "false"
        assert config_service.get_bool("allow_registration") is False

    def test_list_is_sorted(self, app):
        config_service.set_config("a_setting", "1")
        names = [entry.name for entry in config_service.list_config()]
        assert names == sorted(names)
        assert "a_setting" in names


class TestEvents:

    def test_events_in_append_order(self, admin, member):
        events = list(event_service.list_events())
        assert [e.action_no for e in events] == [EventAction.USER_REGISTER, EventAction.USER_REGISTER]
        assert events[0].id < events[1].id

    def test_filters_and_limit(self, admin, member):
        assert [e.dispatcher for e in event_service.list_events(dispatcher=member.user_id)] == [member.user_id]
        assert len(list(event_service.list_events(limit=1))) == 1
        assert list(event_service.list_events(action_no=EventAction.SCHEMA_ALTER)) == []

    def test_event_to_dict(self, admin):
        [event] = event_service.list_events()
        data = event.to_dict()
        assert data["action"] == "USER_REGISTER"
        assert data["created_at"].endswith("Z")
