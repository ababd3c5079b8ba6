from __future__ import annotations

import requests
from requests.auth import AuthBase
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fhir_export.core.config import FHIR_VALIDATE_RESOURCES, REQUEST_TIMEOUT_SECS
from fhir_export.core.errors import ResourceResolutionError
from fhir_export.core.logging import log
from fhir_export.fhir.validators import validate_resource

FHIR_JSON = "application/fhir+json"


class ServerError(Exception):
    def __init__(self, response: requests.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code} from {response.url}")


class FHIRClient:
    def __init__(
        self,
        base_url: str,
        auth: AuthBase | None = None,
        timeout: float = REQUEST_TIMEOUT_SECS,
        session: requests.Session | None = None,
        validate: bool = FHIR_VALIDATE_RESOURCES,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.session = session or requests.Session()
        self.validate = validate

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, ServerError)),
        reraise=True,
    )
    def _get(self, url: str) -> requests.Response:
        resp = self.session.get(url, headers={"Accept": FHIR_JSON}, auth=self.auth, timeout=self.timeout)
        if resp.status_code >= 500:
            raise ServerError(resp)
        return resp

    def read(self, resource_type: str, resource_id: str) -> dict | None:
        """Read one resource by id. Returns None if the server does not know it."""
        url = f"{self.base_url}/{resource_type}/{resource_id}"
        try:
            resp = self._get(url)
        except (requests.RequestException, ServerError) as exc:
            raise ResourceResolutionError(resource_type, resource_id, str(exc)) from exc

        if resp.status_code in (404, 410):
            log.debug("fhir_resource_not_found", resource_type=resource_type, id=resource_id)
            return None
        if not resp.ok:
            raise ResourceResolutionError(resource_type, resource_id, f"HTTP {resp.status_code}")
        try:
            raw = resp.json()
        except ValueError as exc:
            raise ResourceResolutionError(resource_type, resource_id, f"invalid JSON body: {exc}") from exc

        if self.validate:
            try:
                validate_resource(raw, resource_type)
            except ValueError as exc:
                log.warning("validation_failed", resource_type=resource_type, id=resource_id, error=str(exc))
                raise ResourceResolutionError(resource_type, resource_id, f"invalid resource: {exc}") from exc
        return raw
