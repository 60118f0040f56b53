import pytest

from guardian import tasks_engine


@pytest.fixture
def services(app):
    return app.extensions["guardian"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_settings_are_masked(client):
    r = client.patch("/api/settings", json={"plex_token": "abc", "refresh_interval": 30})
    assert r.status_code == 200
    data = r.get_json()
    assert data["plex_token"] == "********"
    assert data["refresh_interval"] == 30
    assert "id" not in data

    r = client.patch("/api/settings", json={"plex_token": "********", "plex_server_ip": "10.0.0.9"})
    assert r.status_code == 200

    services = client.application.extensions["guardian"]
    row = services.db.query_one("SELECT plex_token, plex_server_ip FROM settings WHERE id = 1")
    assert row["plex_token"] == "abc"
    assert row["plex_server_ip"] == "10.0.0.9"


def test_error_shape(client):
    r = client.patch("/api/settings", json={"not_a_setting": 1})
    assert r.status_code == 400
    body = r.get_json()
    assert body["statusCode"] == 400
    assert body["path"] == "/api/settings"
    assert body["method"] == "PATCH"
    assert "not_a_setting" in body["message"]
    assert "timestamp" in body


def test_unknown_device_is_404(client):
    r = client.post("/api/devices/999/approve")
    assert r.status_code == 404
    assert r.get_json()["statusCode"] == 404


def test_unknown_route_is_json_404(client):
    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert r.get_json()["statusCode"] == 404


def test_refresh_and_approve_flow(client, plex, make_session, payload):
    plex.sessions = payload(make_session())

    r = client.post("/api/sessions/refresh")
    assert r.status_code == 200
    active = r.get_json()["MediaContainer"]["Metadata"]
    assert active[0]["User"]["title"] == "alice"
    assert active[0]["thumbnailUrl"] == "http://guardian.test/api/plex/media/thumb/42?t=1700000000"

    pending = client.get("/api/devices/pending").get_json()
    assert len(pending) == 1
    device_id = pending[0]["id"]
    assert pending[0]["temporary_access_minutes_left"] is None

    r = client.post(f"/api/devices/{device_id}/approve")
    assert r.status_code == 200
    assert r.get_json()["status"] == "approved"
    assert client.get("/api/devices/pending").get_json() == []

    r = client.patch(f"/api/devices/{device_id}/rename", json={"name": "Living room"})
    assert r.get_json()["device_name"] == "Living room"

    notifications = client.get("/api/notifications").get_json()
    texts = [n["text"] for n in notifications]
    assert "Stream blocked for alice on iPhone - device needs approval" in texts


def test_temporary_access_routes(client, services, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    device = services.devices.find_device_by_user_and_identifier("100", "dev-1")

    r = client.post(f"/api/devices/{device['id']}/temporary-access", json={"duration_minutes": 30})
    assert r.status_code == 200
    assert 29 <= r.get_json()["temporary_access_minutes_left"] <= 30

    r = client.post(f"/api/devices/{device['id']}/temporary-access", json={})
    assert r.status_code == 400

    r = client.delete(f"/api/devices/{device['id']}/temporary-access")
    assert r.status_code == 200
    assert client.get(f"/api/devices/{device['id']}").get_json()["temporary_access_minutes_left"] is None


def test_notification_routes(client, services):
    n = services.notifications.create_notification("100", "hello")

    assert client.get("/api/notifications/user/100/unread-count").get_json() == {"count": 1}
    r = client.patch(f"/api/notifications/{n['id']}/read")
    assert r.get_json()["read"] is True
    assert client.get("/api/notifications/user/100/unread-count").get_json() == {"count": 0}

    assert client.delete(f"/api/notifications/{n['id']}").status_code == 200
    assert client.delete(f"/api/notifications/{n['id']}").status_code == 404


def test_user_and_time_rule_routes(client, services):
    services.users.update_user_from_session_data("100", "alice")

    r = client.patch("/api/users/100/ip-policy", json={"network_policy": "lan"})
    assert r.get_json()["network_policy"] == "lan"
    assert client.patch("/api/users/100/ip-policy", json={"network_policy": "x"}).status_code == 400

    r = client.post("/api/users/100/time-rules", json={
        "rule_name": "School nights",
        "days_of_week": [1, 2],
        "start_time": "21:00",
        "end_time": "23:59",
    })
    assert r.status_code == 201
    rules = r.get_json()
    assert len(rules) == 2

    rule_id = rules[0]["id"]
    r = client.post(f"/api/time-rules/{rule_id}/toggle")
    assert r.get_json()["enabled"] is False
    assert client.delete(f"/api/time-rules/{rule_id}").status_code == 200
    assert client.delete(f"/api/time-rules/{rule_id}").status_code == 404


def test_media_proxy(client, plex):
    plex.media["library/metadata/42/thumb/1700000000"] = b"jpeg-bytes"

    r = client.get("/api/plex/media/thumb/42?t=1700000000")
    assert r.status_code == 200
    assert r.data == b"jpeg-bytes"
    assert r.mimetype == "image/jpeg"

    assert client.get("/api/plex/media/thumb/43").status_code == 404


def test_plex_web_url_unconfigured(client):
    assert client.get("/api/plex/web-url").status_code == 400


def test_tasks_routes(client, services, monkeypatch):
    queued = []
    monkeypatch.setattr(tasks_engine, "enqueue_task", queued.append)

    tasks = client.get("/api/tasks").get_json()
    assert {t["name"] for t in tasks} == {"update_sessions", "device_cleanup", "sync_plex_users"}

    r = client.post("/api/tasks/sync_plex_users/run")
    assert r.status_code == 202
    assert len(queued) == 1

    assert client.post("/api/tasks/unknown/run").status_code == 404

    services.db.execute("UPDATE tasks SET enabled = 0 WHERE name = 'device_cleanup'")
    assert client.post("/api/tasks/device_cleanup/run").status_code == 400


def test_api_key_guard(tmp_path, plex):
    from guardian.app import create_app
    from guardian.db_manager import DBManager

    path = str(tmp_path / "secured.db")
    app = create_app({
        "DATABASE": path,
        "TESTING": True,
        "START_SCHEDULER": False,
        "API_KEY": "s3cret",
        "PLEX_CLIENT": plex,
    })
    client = app.test_client()
    try:
        assert client.get("/api/settings").status_code == 401
        assert client.get("/api/settings", headers={"X-Api-Key": "s3cre"}).status_code == 401
        assert client.get("/api/settings", headers={"Authorization": "Bearer s3cret-not"}).status_code == 401
        assert client.get("/api/settings", headers={"X-Api-Key": "s3cret"}).status_code == 200
        assert client.get("/api/settings", headers={"Authorization": "Bearer s3cret"}).status_code == 200
        assert client.get("/health").status_code == 200
    finally:
        DBManager(path).close()


def test_maintenance_scripts(client, services, plex, make_session, payload):
    plex.sessions = payload(make_session())
    client.post("/api/sessions/refresh")
    assert services.devices.get_all_devices()[0]["session_count"] == 1

    r = client.post("/api/settings/scripts/reset-stream-counts")
    assert r.status_code == 200
    assert r.get_json()["message"] == "Stream counts reset successfully"
    assert services.devices.get_all_devices()[0]["session_count"] == 0

    r = client.post("/api/settings/scripts/clear-session-history")
    assert r.get_json() == {"success": True, "message": "Session history cleared successfully", "affected": 1}

    r = client.post("/api/settings/scripts/delete-all-devices")
    assert r.get_json()["affected"] == 1
    assert services.devices.get_all_devices() == []


def test_smtp_test_route_when_disabled(client):
    r = client.post("/api/settings/test-smtp")
    assert r.status_code == 200
    assert r.get_json() == {"success": False, "message": "SMTP email notifications are disabled"}


def test_plex_status(client):
    r = client.get("/api/plex/status")
    assert r.get_json() == {"configured": False, "missing": ["plex_server_ip", "plex_token"]}

    client.patch("/api/settings", json={"plex_server_ip": "10.0.0.2", "plex_token": "abc"})
    r = client.get("/api/plex/status")
    assert r.get_json() == {"configured": True, "missing": []}


def test_logs_level_filter(client):
    r = client.get("/api/logs?level=warning&limit=5")
    assert r.status_code == 200
    assert all("| WARNING |" in line for line in r.get_json()["lines"])

    r = client.get("/api/logs?level=loud")
    assert r.status_code == 400
