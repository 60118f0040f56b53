import pytest

from guardian.core.settings import update_settings
from guardian.core.users import parse_users_xml
from guardian.errors import NotFoundError, ValidationError

USERS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<MediaContainer friendlyName="myPlex" size="2">
  <User id="100" title="Alice" username="alice" thumb="https://plex.tv/users/a/avatar"/>
  <User id="200" title="Bob" username="" thumb="https://plex.tv/users/b/avatar"/>
</MediaContainer>
"""


def test_parse_users_xml():
    users = parse_users_xml(USERS_XML)
    assert [u["id"] for u in users] == ["100", "200"]
    assert users[0]["username"] == "alice"
    assert parse_users_xml("<not-xml") == []


def test_sync_creates_and_updates(services, plex):
    services.users.update_user_from_session_data("100", "old-name")
    services.users.update_user_preference("100", False)
    plex.users_xml = USERS_XML

    result = services.users.sync_users_from_plex_tv()
    assert result == {"created": 1, "updated": 1, "errors": 0}

    alice = services.users.get_user_preference("100")
    assert alice["username"] == "alice"
    assert alice["avatar_url"] == "https://plex.tv/users/a/avatar"
    assert alice["default_block"] is False

    bob = services.users.get_user_preference("200")
    assert bob["username"] == "Bob"
    assert bob["default_block"] is None

    assert services.users.sync_users_from_plex_tv() == {"created": 0, "updated": 0, "errors": 0}


def test_sync_with_empty_response(services, plex):
    plex.users_xml = ""
    assert services.users.sync_users_from_plex_tv() == {"created": 0, "updated": 0, "errors": 1}


def test_session_data_does_not_overwrite(services):
    services.users.update_user_from_session_data("100", "alice")
    services.users.update_user_from_session_data("100", "someone-else")
    assert services.users.get_user_preference("100")["username"] == "alice"


def test_visibility(services):
    services.users.update_user_from_session_data("100", "alice")
    services.users.update_user_from_session_data("200", "bob")

    assert services.users.hide_user("100")["hidden"] is True
    assert [u["user_id"] for u in services.users.get_all_users()] == ["200"]
    assert [u["user_id"] for u in services.users.get_all_users(include_hidden=True)] == ["100", "200"]
    assert [u["user_id"] for u in services.users.get_hidden_users()] == ["100"]

    assert services.users.toggle_user_visibility("100")["hidden"] is False
    assert services.users.show_user("100")["hidden"] is False

    with pytest.raises(ValidationError):
        services.users.update_user_visibility("100", "explode")
    with pytest.raises(NotFoundError):
        services.users.hide_user("999")


def test_preference_created_with_device_username(services, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    services.db.execute("DELETE FROM user_preferences")

    pref = services.users.update_user_preference("100", True)
    assert pref["username"] == "alice"
    assert pref["default_block"] is True


def test_effective_default_block(services, db):
    services.users.update_user_from_session_data("100", "alice")
    assert services.users.get_effective_default_block("100") is True

    update_settings(db, {"default_block": False})
    assert services.users.get_effective_default_block("100") is False
    assert services.users.get_effective_default_block("unknown") is False

    services.users.update_user_preference("100", True)
    assert services.users.get_effective_default_block("100") is True


def test_ip_policy(services):
    services.users.update_user_from_session_data("100", "alice")

    pref = services.users.update_user_ip_policy(
        "100",
        network_policy="wan",
        ip_access_policy="restricted",
        allowed_ips=[" 203.0.113.7 ", "198.51.100.0/24", ""],
    )
    assert pref["network_policy"] == "wan"
    assert pref["ip_access_policy"] == "restricted"
    assert pref["allowed_ips"] == ["203.0.113.7", "198.51.100.0/24"]

    with pytest.raises(ValidationError):
        services.users.update_user_ip_policy("100", network_policy="moon")
    with pytest.raises(ValidationError):
        services.users.update_user_ip_policy("100", allowed_ips=["300.1.1.1"])
    with pytest.raises(NotFoundError):
        services.users.update_user_ip_policy("999", network_policy="lan")
