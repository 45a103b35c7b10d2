"""Authenticated HTTP transport and blob uploader for Fusion."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import httpx

from .errors import AuthenticationError, ConfigError, UploadError
from .models import DEFAULT_FUSION_PORT, FusionCredentials, FusionEndpoint

__all__ = [
    "BlobUploader",
    "FusionSession",
    "blob_url",
    "parse_host",
]

logger = logging.getLogger(__name__)

_BLOBS_PATH = "/api/apollo/blobs/"
_SESSION_PATH = "/api/session"
_ZIP_CONTENT_TYPE = "application/zip"


def parse_host(host_and_port: str) -> FusionEndpoint:
    """Parse ``host`` or ``host:port`` into a :class:`FusionEndpoint`."""
    parts = host_and_port.strip().split(":")
    if len(parts) > 2 or not parts[0]:
        raise ConfigError(f"Invalid Fusion host {host_and_port!r}; expected host[:port].")
    if len(parts) == 1:
        return FusionEndpoint(host=parts[0], port=DEFAULT_FUSION_PORT)
    try:
        port = int(parts[1])
    except ValueError as exc:
        raise ConfigError(
            f"Invalid port {parts[1]!r} in Fusion host {host_and_port!r}."
        ) from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Port {port} out of range in Fusion host {host_and_port!r}.")
    return FusionEndpoint(host=parts[0], port=port)


def blob_url(
    endpoint: FusionEndpoint, model_id: str, params: Mapping[str, str] | None = None
) -> httpx.URL:
    """Return the blob store URL for *model_id* with *params* as the query."""
    url = httpx.URL(f"{endpoint.base_url}{_BLOBS_PATH}{model_id}")
    if params:
        url = url.copy_merge_params(dict(params))
    return url


class FusionSession:
    """
    Sends requests to Fusion with session-cookie authentication.

    When credentials are configured the session logs in lazily on first use
    and logs in again when Fusion answers 401 (expired session), up to
    ``max_auth_retries`` times.  Without credentials requests go out
    unauthenticated and a 401 is final.
    """

    def __init__(
        self,
        endpoint: FusionEndpoint,
        credentials: FusionCredentials | None = None,
        timeout_s: float = 60.0,
        max_auth_retries: int = 1,
        client: httpx.Client | None = None,
    ):
        self.endpoint = endpoint
        self.credentials = credentials
        self.max_auth_retries = max_auth_retries
        self._owns_client = client is None
        self.client = client if client is not None else httpx.Client(timeout=timeout_s)
        self._authenticated = False

    def __enter__(self) -> "FusionSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def login(self) -> None:
        """Open a Fusion session for the configured realm."""
        if self.credentials is None:
            raise AuthenticationError("No credentials configured for Fusion session.")

        url = httpx.URL(f"{self.endpoint.base_url}{_SESSION_PATH}").copy_merge_params(
            {"realmName": self.credentials.realm}
        )
        payload = {
            "username": self.credentials.username,
            "password": self.credentials.password,
        }
        try:
            response = self.client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise UploadError(f"Fusion session request to {url} failed: {exc}") from exc

        if not response.is_success:
            self._authenticated = False
            raise AuthenticationError(
                f"Fusion login failed for user {self.credentials.username!r} in realm "
                f"{self.credentials.realm!r} (status {response.status_code}): "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )
        self._authenticated = True
        logger.info(
            "Opened Fusion session for %s in realm %s",
            self.credentials.username,
            self.credentials.realm,
        )

    def send(
        self,
        method: str,
        url: httpx.URL | str,
        headers: Mapping[str, str] | None = None,
        body_path: Path | None = None,
    ) -> httpx.Response:
        """
        Send a request, renewing the session on 401.

        The body is streamed from *body_path* and the file is reopened for
        every attempt.

        Raises:
            UploadError: network failure or a non-2xx response
            AuthenticationError: login was rejected
        """
        if self.credentials is not None and not self._authenticated:
            self.login()

        attempt = 0
        while True:
            response = self._send_once(method, url, headers, body_path)
            if (
                response.status_code == 401
                and self.credentials is not None
                and attempt < self.max_auth_retries
            ):
                attempt += 1
                logger.warning(
                    "Fusion session expired, re-authenticating (attempt %d of %d)",
                    attempt,
                    self.max_auth_retries,
                )
                self._authenticated = False
                self.login()
                continue

            if not response.is_success:
                raise UploadError(
                    f"{method} {url} failed (status {response.status_code}): "
                    f"{response.text[:200]}",
                    status_code=response.status_code,
                )
            return response

    def _send_once(
        self,
        method: str,
        url: httpx.URL | str,
        headers: Mapping[str, str] | None,
        body_path: Path | None,
    ) -> httpx.Response:
        try:
            if body_path is None:
                return self.client.request(method, url, headers=headers)
            with open(body_path, "rb") as body:
                return self.client.request(method, url, headers=headers, content=body)
        except OSError as exc:
            raise UploadError(f"Could not read request body {body_path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UploadError(f"{method} {url} failed: {exc}") from exc


class BlobUploader:
    """PUTs model archives into the Fusion blob store."""

    def __init__(self, session: FusionSession):
        self.session = session

    def upload(
        self, model_id: str, archive_path: Path, params: Mapping[str, str] | None = None
    ) -> httpx.Response:
        """
        Upload *archive_path* as blob *model_id*.

        Every entry of *params* becomes a query parameter, in iteration order.
        """
        url = blob_url(self.session.endpoint, model_id, params)
        logger.info("Uploading %s to %s", archive_path, url)
        response = self.session.send(
            "PUT",
            url,
            headers={"Content-Type": _ZIP_CONTENT_TYPE},
            body_path=Path(archive_path),
        )
        logger.info("Uploaded model %s (status %d)", model_id, response.status_code)
        return response
