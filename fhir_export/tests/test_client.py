import pytest
import requests

from fhir_export.core.errors import OAuthError, ResourceResolutionError
from fhir_export.fhir.auth import GrantType, OAuth2TokenAuth
from fhir_export.fhir.cache import CachingResourceReader, ResourceCache
from fhir_export.fhir.client import FHIRClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, url="http://fhir/x"):
        self.status_code = status_code
        self._body = body
        self.url = url

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, data=None, **kwargs):
        self.calls.append((url, data))
        return self.responses.pop(0)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def _client(*responses, validate=False):
    session = FakeSession(*responses)
    return FHIRClient("http://fhir/", session=session, validate=validate), session


def test_read_returns_resource():
    patient = {"resourceType": "Patient", "id": "p1"}
    client, session = _client(FakeResponse(200, patient))
    assert client.read("Patient", "p1") == patient
    assert session.calls == ["http://fhir/Patient/p1"]


@pytest.mark.parametrize("status", [404, 410])
def test_read_returns_none_when_not_found(status):
    client, _ = _client(FakeResponse(status))
    assert client.read("Patient", "p1") is None


def test_transient_failures_are_retried():
    patient = {"resourceType": "Patient", "id": "p1"}
    client, session = _client(requests.ConnectionError("reset"), FakeResponse(503), FakeResponse(200, patient))
    assert client.read("Patient", "p1") == patient
    assert len(session.calls) == 3


def test_persistent_server_errors_become_resolution_errors():
    client, session = _client(*[FakeResponse(500) for _ in range(5)])
    with pytest.raises(ResourceResolutionError) as info:
        client.read("Consent", "c1")
    assert info.value.resource_type == "Consent"
    assert len(session.calls) == 5


def test_client_errors_are_not_retried():
    client, session = _client(FakeResponse(403))
    with pytest.raises(ResourceResolutionError):
        client.read("Patient", "p1")
    assert len(session.calls) == 1


def test_invalid_resources_are_rejected_when_validating():
    invalid = {"resourceType": "Patient", "id": "p1", "active": "not-a-bool", "birthDate": "not-a-date"}
    client, _ = _client(FakeResponse(200, invalid), validate=True)
    with pytest.raises(ResourceResolutionError):
        client.read("Patient", "p1")


def test_mismatched_resource_type_is_rejected_when_validating():
    client, _ = _client(FakeResponse(200, {"resourceType": "Consent", "id": "p1"}), validate=True)
    with pytest.raises(ResourceResolutionError):
        client.read("Patient", "p1")


def test_caching_reader_skips_uncached_types():
    patient = {"resourceType": "Patient", "id": "p1"}
    consent = {"resourceType": "Consent", "id": "c1"}
    client, session = _client(
        FakeResponse(200, patient), FakeResponse(404), FakeResponse(200, consent), FakeResponse(200, consent)
    )
    cache = ResourceCache()
    reader = CachingResourceReader(client, cache, uncached_types=["Consent"])

    assert reader.read("Patient", "p1") == patient
    assert reader.read("Patient", "p1") == patient
    assert reader.read("Specimen", "gone") is None
    assert reader.read("Specimen", "gone") is None
    assert reader.read("Consent", "c1") == consent
    assert reader.read("Consent", "c1") == consent
    assert len(session.calls) == 4
    assert len(cache) == 2

    cache.clear()
    assert len(cache) == 0


def test_oauth_token_is_fetched_lazily_and_cached():
    session = FakeSession(FakeResponse(200, {"access_token": "t1"}))
    auth = OAuth2TokenAuth("http://auth/token", "password", "client", "secret", "user", "pw", session=session)
    assert session.calls == []
    assert auth.token == "t1"
    assert auth.token == "t1"
    ((url, form),) = session.calls
    assert url == "http://auth/token"
    assert form == {
        "grant_type": "password",
        "client_id": "client",
        "client_secret": "secret",
        "username": "user",
        "password": "pw",
    }


def test_oauth_refresh_failure_raises_oauth_error():
    session = FakeSession(FakeResponse(401, {"error": "invalid_client"}))
    auth = OAuth2TokenAuth("http://auth/token", GrantType.CLIENT_CREDENTIALS, "client", "secret", session=session)
    with pytest.raises(OAuthError):
        auth.refresh()


def test_oauth_sets_bearer_header():
    session = FakeSession(FakeResponse(200, {"access_token": "t1"}))
    auth = OAuth2TokenAuth("http://auth/token", "client_credentials", "client", "secret", session=session)
    prepared = auth(requests.Request("GET", "http://fhir/Patient/p1").prepare())
    assert prepared.headers["Authorization"] == "Bearer t1"


def test_oauth_replays_once_after_401():
    session = FakeSession(FakeResponse(200, {"access_token": "t1"}), FakeResponse(200, {"access_token": "t2"}))
    auth = OAuth2TokenAuth("http://auth/token", "client_credentials", "client", "secret", session=session)
    request = auth(requests.Request("GET", "http://fhir/Patient/p1").prepare())

    sent = []

    class Adapter:
        def send(self, prepared, **kwargs):
            sent.append(prepared.headers["Authorization"])
            ok = requests.Response()
            ok.status_code = 200
            return ok

    unauthorized = requests.Response()
    unauthorized.status_code = 401
    unauthorized._content = b""
    unauthorized._content_consumed = True
    unauthorized.request = request
    unauthorized.connection = Adapter()

    replayed = auth._handle_401(unauthorized)
    assert replayed.status_code == 200
    assert sent == ["Bearer t2"]
    assert replayed.history == [unauthorized]
