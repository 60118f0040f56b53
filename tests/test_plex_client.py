import pytest
import requests
from plexapi.exceptions import Unauthorized

from guardian.core.plex import client as client_module
from guardian.core.plex.client import PlexClient
from guardian.errors import PlexConfigurationError, PlexRequestError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b"{}"):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload if payload is not None else {}
        self.content = content
        self.text = content.decode("utf-8", "replace")

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)


@pytest.fixture
def calls(monkeypatch):
    recorded = []

    def fake_request(method, url, **kwargs):
        recorded.append((method, url, kwargs))
        return FakeResponse(payload={"MediaContainer": {"size": 0}})

    monkeypatch.setattr(client_module.requests, "request", fake_request)
    return recorded


def test_missing_configuration(db):
    with pytest.raises(PlexConfigurationError) as exc:
        PlexClient(db).get_sessions()
    assert exc.value.message == "Missing required Plex configuration: ip, port or token"


def test_get_sessions_request_shape(db, configure_plex, calls):
    configure_plex(use_ssl=True, ignore_cert_errors=True)

    data = PlexClient(db).get_sessions()

    assert data == {"MediaContainer": {"size": 0}}
    method, url, kwargs = calls[0]
    assert method == "GET"
    assert url == "https://192.168.1.5:32400/status/sessions"
    assert kwargs["verify"] is False
    assert kwargs["headers"]["X-Plex-Token"] == "secret-token"
    assert kwargs["headers"]["X-Plex-Client-Identifier"] == "Guardian"
    assert kwargs["headers"]["Accept"] == "application/json"


def test_non_success_status_raises(db, configure_plex, monkeypatch):
    configure_plex()
    monkeypatch.setattr(client_module.requests, "request", lambda *a, **k: FakeResponse(401))

    with pytest.raises(PlexRequestError) as exc:
        PlexClient(db).get_sessions()
    assert exc.value.plex_status == 401
    assert exc.value.status_code == 502


def test_network_failure_raises(db, configure_plex, monkeypatch):
    configure_plex()

    def boom(*args, **kwargs):
        raise requests.exceptions.ConnectionError("no route")

    monkeypatch.setattr(client_module.requests, "request", boom)
    with pytest.raises(PlexRequestError):
        PlexClient(db).get_sessions()


def test_terminate_session(db, configure_plex, calls):
    configure_plex()
    client = PlexClient(db)

    client.terminate_session("  ", "reason")
    assert calls == []

    client.terminate_session("abc", "Not allowed")
    method, url, kwargs = calls[0]
    assert url == "http://192.168.1.5:32400/status/sessions/terminate"
    assert kwargs["params"] == {"sessionId": "abc", "reason": "Not allowed"}


def test_request_media(db, configure_plex, monkeypatch):
    assert PlexClient(db).request_media("library/metadata/42/thumb") is None

    configure_plex()
    seen = []

    def fake_get(url, **kwargs):
        seen.append(url)
        if url.endswith("/missing"):
            return FakeResponse(404)
        return FakeResponse(content=b"\x89PNG")

    monkeypatch.setattr(client_module.requests, "get", fake_get)
    client = PlexClient(db)
    assert client.request_media("library/metadata/42/thumb") == b"\x89PNG"
    assert client.request_media("missing") is None
    assert seen[0] == "http://192.168.1.5:32400/library/metadata/42/thumb"


def test_get_plex_users(db, configure_plex, monkeypatch):
    with pytest.raises(PlexConfigurationError):
        PlexClient(db).get_plex_users()

    configure_plex()
    monkeypatch.setattr(
        client_module.requests, "get",
        lambda url, **kwargs: FakeResponse(content=b"<MediaContainer/>"),
    )
    assert PlexClient(db).get_plex_users() == "<MediaContainer/>"

    monkeypatch.setattr(client_module.requests, "get", lambda url, **kwargs: FakeResponse(401))
    with pytest.raises(PlexRequestError) as exc:
        PlexClient(db).get_plex_users()
    assert exc.value.plex_status == 401


class FakeServer:
    error = None

    def __init__(self, baseurl, token, session=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.friendlyName = "Home"
        self.version = "1.40"
        self.machineIdentifier = "machine-1"


@pytest.mark.parametrize("error, code", [
    (None, "CONNECTION_SUCCESS"),
    (Unauthorized("(401) unauthorized"), "AUTH_FAILED"),
    (requests.exceptions.SSLError("CERTIFICATE_VERIFY_FAILED"), "CERT_ERROR"),
    (requests.exceptions.SSLError("wrong version number"), "SSL_ERROR"),
    (requests.exceptions.ConnectTimeout("timed out"), "CONNECTION_TIMEOUT"),
    (requests.exceptions.ConnectionError("Connection refused"), "CONNECTION_REFUSED"),
    (requests.exceptions.ConnectionError("Name or service not known"), "NETWORK_ERROR"),
])
def test_connection_codes(db, configure_plex, monkeypatch, error, code):
    configure_plex()
    monkeypatch.setattr(FakeServer, "error", error)
    monkeypatch.setattr(client_module, "PlexServer", FakeServer)

    result = PlexClient(db).test_connection()
    assert result["code"] == code
    assert result["success"] is (code == "CONNECTION_SUCCESS")


def test_connection_missing_config(db):
    result = PlexClient(db).test_connection()
    assert result["code"] == "MISSING_CONFIG"
    assert result["success"] is False


def test_server_identity(db, configure_plex, monkeypatch):
    monkeypatch.setattr(client_module, "PlexServer", FakeServer)
    assert PlexClient(db).get_server_identity() is None

    configure_plex()
    assert PlexClient(db).get_server_identity() == "machine-1"
