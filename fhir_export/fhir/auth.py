from __future__ import annotations

import threading
from enum import Enum

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from fhir_export.core import config
from fhir_export.core.errors import ConfigurationError, OAuthError
from fhir_export.core.logging import log


class GrantType(str, Enum):
    CLIENT_CREDENTIALS = "client_credentials"
    PASSWORD = "password"
    REFRESH_TOKEN = "refresh_token"


class OAuth2TokenAuth(AuthBase):
    """Bearer token auth. Fetches a token on first use and refreshes it once per 401 response."""

    def __init__(
        self,
        token_url: str,
        grant_type: GrantType | str,
        client_id: str,
        client_secret: str,
        username: str | None = None,
        password: str | None = None,
        refresh_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = config.REQUEST_TIMEOUT_SECS,
    ):
        try:
            self.grant_type = GrantType(grant_type)
        except ValueError:
            raise ConfigurationError(f"Unsupported OAuth grant type '{grant_type}'") from None
        if self.grant_type is GrantType.PASSWORD and not (username and password):
            raise ConfigurationError("Password grant requires a username and password")
        if self.grant_type is GrantType.REFRESH_TOKEN and not refresh_token:
            raise ConfigurationError("Refresh token grant requires a refresh token")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.refresh_token = refresh_token
        self.session = session or requests.Session()
        self.timeout = timeout
        self._lock = threading.Lock()
        self._token: str | None = None

    def _form(self) -> dict:
        form = {
            "grant_type": self.grant_type.value,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.grant_type is GrantType.PASSWORD:
            form.update(username=self.username, password=self.password)
        elif self.grant_type is GrantType.REFRESH_TOKEN:
            form["refresh_token"] = self.refresh_token
        return form

    def refresh(self) -> str:
        with self._lock:
            try:
                resp = self.session.post(self.token_url, data=self._form(), timeout=self.timeout)
                resp.raise_for_status()
                token = resp.json()["access_token"]
            except (requests.RequestException, ValueError, KeyError) as exc:
                raise OAuthError(f"Failed to refresh access token: {exc}") from exc
            self._token = token
            log.debug("oauth_token_refreshed", token_url=self.token_url)
            return token

    @property
    def token(self) -> str:
        return self._token or self.refresh()

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        r.headers["Authorization"] = f"Bearer {self.token}"
        r.register_hook("response", self._handle_401)
        return r

    def _handle_401(self, response: requests.Response, **kwargs) -> requests.Response:
        if response.status_code != 401:
            return response
        log.debug("oauth_unauthorized_retry", url=response.request.url)
        token = self.refresh()
        # release the connection before replaying
        response.content
        response.close()
        replay = response.request.copy()
        replay.headers["Authorization"] = f"Bearer {token}"
        retried = response.connection.send(replay, **kwargs)
        retried.history.append(response)
        retried.request = replay
        return retried


def build_auth() -> AuthBase | None:
    if config.FHIR_BASIC_USERNAME:
        return HTTPBasicAuth(config.FHIR_BASIC_USERNAME, config.FHIR_BASIC_PASSWORD or "")
    if config.FHIR_OAUTH_TOKEN_URL:
        if not config.FHIR_OAUTH_CLIENT_ID:
            raise ConfigurationError("FHIR_OAUTH_CLIENT_ID is required when FHIR_OAUTH_TOKEN_URL is set")
        return OAuth2TokenAuth(
            token_url=config.FHIR_OAUTH_TOKEN_URL,
            grant_type=config.FHIR_OAUTH_GRANT_TYPE,
            client_id=config.FHIR_OAUTH_CLIENT_ID,
            client_secret=config.FHIR_OAUTH_CLIENT_SECRET or "",
            username=config.FHIR_OAUTH_USERNAME,
            password=config.FHIR_OAUTH_PASSWORD,
            refresh_token=config.FHIR_OAUTH_REFRESH_TOKEN,
        )
    return None
