import pytest

from guardian.errors import NotFoundError, ValidationError


def _device(services, machine_id="dev-1", user_id="100"):
    return services.devices.find_device_by_user_and_identifier(user_id, machine_id)


def test_new_device_is_pending_and_emits_event(services, make_session, payload):
    events = []
    services.devices.on_new_device_detected(events.append)

    services.devices.process_sessions_for_device_tracking(payload(make_session()))

    device = _device(services)
    assert device["status"] == "pending"
    assert device["session_count"] == 1
    assert device["current_session_key"] == "1"
    assert device["device_name"] == "iPhone"
    assert device["ip_address"] == "192.168.1.10"
    assert services.users.get_user_preference("100")["username"] == "alice"

    assert len(events) == 1
    assert events[0].device_identifier == "dev-1"
    assert events[0].username == "alice"
    assert events[0].session_key == "1"


def test_session_count_only_grows_on_new_session(services, make_session, payload):
    devices = services.devices
    devices.process_sessions_for_device_tracking(payload(make_session(session_key="1")))
    devices.process_sessions_for_device_tracking(payload(make_session(session_key="1")))
    assert _device(services)["session_count"] == 1

    devices.process_sessions_for_device_tracking(payload(make_session(session_key="2")))
    device = _device(services)
    assert device["session_count"] == 2
    assert device["current_session_key"] == "2"


def test_existing_fields_kept_but_ip_refreshed(services, make_session, payload):
    devices = services.devices
    devices.process_sessions_for_device_tracking(payload(make_session()))
    device = _device(services)
    devices.rename_device(device["id"], "Living room")

    devices.process_sessions_for_device_tracking(payload(make_session(address="192.168.1.99")))
    device = _device(services)
    assert device["device_name"] == "Living room"
    assert device["ip_address"] == "192.168.1.99"


def test_session_without_user_uses_uuid(services, make_session, payload):
    session = make_session()
    session["User"] = {"uuid": "u-xyz", "title": "ghost"}
    services.devices.process_sessions_for_device_tracking(payload(session))
    assert _device(services, user_id="u-xyz") is not None


def test_callback_errors_do_not_stop_tracking(services, make_session, payload):
    def boom(_event):
        raise RuntimeError("callback failed")

    services.devices.on_new_device_detected(boom)
    services.devices.process_sessions_for_device_tracking(
        payload(make_session(machine_id="a"), make_session(session_key="2", machine_id="b"))
    )
    assert _device(services, "a") and _device(services, "b")


def test_queries_by_status(services, make_session, payload):
    devices = services.devices
    devices.process_sessions_for_device_tracking(payload(
        make_session(machine_id="a"),
        make_session(session_key="2", machine_id="b"),
        make_session(session_key="3", machine_id="c"),
    ))
    devices.approve_device(_device(services, "a")["id"])
    devices.reject_device(_device(services, "b")["id"])

    assert {d["device_identifier"] for d in devices.get_pending_devices()} == {"c"}
    assert {d["device_identifier"] for d in devices.get_approved_devices()} == {"a"}
    assert {d["device_identifier"] for d in devices.get_processed_devices()} == {"a", "b"}
    assert len(devices.get_all_devices()) == 3
    assert devices.find_device_by_identifier("b")["status"] == "rejected"


def test_admin_actions_on_missing_device(services):
    with pytest.raises(NotFoundError):
        services.devices.approve_device(999)
    with pytest.raises(NotFoundError):
        services.devices.reject_device(999)
    with pytest.raises(NotFoundError):
        services.devices.delete_device(999)
    with pytest.raises(NotFoundError):
        services.devices.rename_device(999, "x")


def test_temporary_access_lifecycle(services, db, make_session, payload):
    devices = services.devices
    devices.process_sessions_for_device_tracking(payload(make_session()))
    device_id = _device(services)["id"]

    with pytest.raises(ValidationError):
        devices.grant_temporary_access(device_id, 0)

    device = devices.grant_temporary_access(device_id, 30)
    assert device["temporary_access_duration_minutes"] == 30
    assert devices.is_temporary_access_valid(device)
    assert devices.get_temporary_access_time_left(device) == 30

    db.execute(
        "UPDATE user_devices SET temporary_access_until = '2000-01-01 00:00:00' WHERE id = ?",
        (device_id,),
    )
    expired = devices.get_device(device_id)
    assert devices.get_temporary_access_time_left(expired) == 0
    assert not devices.is_temporary_access_valid(expired)

    revoked = devices.get_device(device_id)
    assert revoked["temporary_access_until"] is None
    assert revoked["temporary_access_granted_at"] is None
    assert devices.get_temporary_access_time_left(revoked) is None


def test_approve_revokes_temporary_access(services, make_session, payload):
    devices = services.devices
    devices.process_sessions_for_device_tracking(payload(make_session()))
    device_id = _device(services)["id"]

    devices.grant_temporary_access(device_id, 60)
    device = devices.approve_device(device_id)
    assert device["status"] == "approved"
    assert device["temporary_access_until"] is None


def test_clear_session_key(services, db, make_session, payload):
    services.orchestrator.orchestrate_session_update(payload(make_session()))
    services.devices.clear_session_key("1")

    assert _device(services)["current_session_key"] is None
    row = db.query_one("SELECT ended_at FROM session_history WHERE session_key = '1'")
    assert row["ended_at"] is not None


def test_delete_device_removes_history(services, db, make_session, payload):
    services.sessions.update_active_sessions(payload(make_session()))
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    services.sessions.update_active_sessions(payload(make_session()))
    device_id = _device(services)["id"]

    assert db.query_one("SELECT COUNT(*) AS cnt FROM session_history WHERE user_device_id = ?", (device_id,))["cnt"] == 1
    services.devices.delete_device(device_id)

    assert _device(services) is None
    assert db.query_one("SELECT COUNT(*) AS cnt FROM session_history WHERE user_device_id = ?", (device_id,))["cnt"] == 0


def test_cleanup_inactive_devices(services, db, make_session, payload):
    devices = services.devices
    assert devices.cleanup_inactive_devices(30) == {"deleted_count": 0, "deleted_devices": []}

    devices.process_sessions_for_device_tracking(payload(
        make_session(machine_id="old"),
        make_session(session_key="2", machine_id="fresh"),
    ))
    db.execute("UPDATE user_devices SET last_seen = '2001-05-01 12:00:00' WHERE device_identifier = 'old'")

    result = devices.cleanup_inactive_devices(30)
    assert result["deleted_count"] == 1
    assert result["deleted_devices"][0]["device_identifier"] == "old"
    assert [d["device_identifier"] for d in devices.get_all_devices()] == ["fresh"]


def test_reset_stream_counts(services, db, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    services.devices.process_sessions_for_device_tracking(payload(make_session(session_key="2")))
    assert _device(services)["session_count"] == 2

    assert services.devices.reset_stream_counts() == 1
    assert _device(services)["session_count"] == 0


def test_delete_all_devices(services, db, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(
        make_session(),
        make_session(session_key="2", machine_id="dev-2"),
    ))
    services.sessions.update_active_sessions(payload(make_session()))

    assert services.devices.delete_all_devices() == 2
    assert services.devices.get_all_devices() == []
    assert db.query_one("SELECT COUNT(*) AS cnt FROM session_history")["cnt"] == 0
    assert services.devices.delete_all_devices() == 0
