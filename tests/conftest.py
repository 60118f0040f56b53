import os
import tempfile

# log directory must exist before guardian.logging_utils is imported
os.environ.setdefault("GUARDIAN_LOG_DIR", tempfile.mkdtemp(prefix="guardian-logs-"))
os.environ["GUARDIAN_START_SCHEDULER"] = "0"

import pytest

from guardian.app import create_app
from guardian.core.settings import update_settings
from guardian.db_bootstrap import run_migrations
from guardian.db_manager import DBManager
from guardian.services import build_services


class FakePlexClient:
    """Records calls instead of talking to a Plex server."""

    def __init__(self):
        self.sessions = {"MediaContainer": {"size": 0, "Metadata": []}}
        self.identity = "server-abc"
        self.identity_calls = 0
        self.terminated = []
        self.fail_terminate = False
        self.users_xml = ""
        self.media = {}

    def get_sessions(self):
        return self.sessions

    def get_server_identity(self):
        self.identity_calls += 1
        return self.identity

    def terminate_session(self, session_id, reason):
        if self.fail_terminate:
            raise RuntimeError("plex unreachable")
        self.terminated.append((session_id, reason))

    def get_plex_users(self):
        return self.users_xml

    def request_media(self, endpoint):
        return self.media.get(endpoint)

    def test_connection(self):
        return {"success": True, "code": "CONNECTION_SUCCESS", "message": "ok", "suggestion": None}


def _make_session(
    session_key="1",
    user_id="100",
    username="alice",
    machine_id="dev-1",
    device="iPhone",
    product="Plex for iOS",
    platform="iOS",
    address="192.168.1.10",
    session_id="sess-1",
    state="playing",
    **extra,
):
    session = {
        "sessionKey": session_key,
        "title": "Big Movie",
        "type": "movie",
        "year": 2020,
        "duration": 7200000,
        "viewOffset": 0,
        "thumb": "/library/metadata/42/thumb/1700000000",
        "art": "/library/metadata/42/art/1700000000",
        "ratingKey": "42",
        "User": {"id": user_id, "title": username, "thumb": "https://plex.tv/users/x/avatar"},
        "Player": {
            "machineIdentifier": machine_id,
            "device": device,
            "title": device,
            "product": product,
            "platform": platform,
            "version": "8.30",
            "address": address,
            "state": state,
        },
        "Session": {"id": session_id, "bandwidth": 4000, "location": "lan"},
        "Media": [{
            "videoResolution": "1080",
            "bitrate": 8000,
            "container": "mkv",
            "videoCodec": "h264",
            "audioCodec": "aac",
        }],
    }
    session.update(extra)
    return session


def _payload(*sessions):
    return {"MediaContainer": {"size": len(sessions), "Metadata": list(sessions)}}


@pytest.fixture
def make_session():
    return _make_session


@pytest.fixture
def payload():
    return _payload


@pytest.fixture
def db(tmp_path):
    path = str(tmp_path / "guardian.db")
    run_migrations(path)
    manager = DBManager(path)
    yield manager
    manager.close()


@pytest.fixture
def plex():
    return FakePlexClient()


@pytest.fixture
def services(db, plex):
    s = build_services(db, public_url="http://guardian.test", plex_client=plex)
    s.notification_orchestrator.retry_delay = 0
    return s


@pytest.fixture
def configure_plex(db):
    def _configure(**extra):
        values = {
            "plex_server_ip": "192.168.1.5",
            "plex_server_port": "32400",
            "plex_token": "secret-token",
        }
        values.update(extra)
        update_settings(db, values)
    return _configure


@pytest.fixture
def app(tmp_path, plex):
    path = str(tmp_path / "app.db")
    app = create_app({
        "DATABASE": path,
        "TESTING": True,
        "START_SCHEDULER": False,
        "API_KEY": "",
        "PUBLIC_URL": "http://guardian.test",
        "PLEX_CLIENT": plex,
    })
    app.extensions["guardian"].notification_orchestrator.retry_delay = 0
    yield app
    DBManager(path).close()


@pytest.fixture
def client(app):
    return app.test_client()
