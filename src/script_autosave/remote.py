"""Remote save contract and HTTP client for the project API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

import requests
from requests import Response
from requests.exceptions import ConnectionError, RequestException, Timeout

from .hashing import content_hash
from .storage import SINGLE_EPISODE, EpisodeKey, normalize_episode_key

LOGGER = logging.getLogger(__name__)


class ProjectApiError(Exception):
    """Raised when the project API rejects or fails a request."""


@dataclass
class RemoteSaveResult:
    """
    Outcome of one remote save attempt.

    remote_content_hash is the digest of the remote script as it stood before
    this write (or as it stands, if the write was rejected). It is None when
    the service cannot report it. remote_content optionally carries that
    script so a conflict can show or restore it.
    """

    ok: bool
    remote_content_hash: Optional[str] = None
    remote_content: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def success(
        cls,
        remote_content_hash: Optional[str] = None,
        remote_content: Optional[str] = None,
    ) -> "RemoteSaveResult":
        return cls(True, remote_content_hash, remote_content)

    @classmethod
    def failure(
        cls,
        reason: str,
        remote_content_hash: Optional[str] = None,
        remote_content: Optional[str] = None,
    ) -> "RemoteSaveResult":
        return cls(False, remote_content_hash, remote_content, reason)


RemoteSave = Callable[[str, EpisodeKey, str], object]


def coerce_result(value: object) -> RemoteSaveResult:
    """
    Normalize what a remote save function returned.

    None means success without a remote hash (a plain function that raises on
    failure). Dicts use the RemoteSaveResult field names.
    """
    if isinstance(value, RemoteSaveResult):
        return value
    if value is None:
        return RemoteSaveResult.success()
    if isinstance(value, dict):
        return RemoteSaveResult(
            ok=bool(value.get("ok", True)),
            remote_content_hash=value.get("remote_content_hash"),
            remote_content=value.get("remote_content"),
            reason=value.get("reason"),
        )
    raise TypeError(f"Unsupported remote save response: {type(value).__name__}")


@dataclass
class RemoteRecord:
    """A script as loaded from the project record."""

    content: str
    updated_at: Optional[int]


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Convert an ISO-8601 timestamp to epoch milliseconds."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        LOGGER.debug("Unparseable timestamp %r", value)
        return None
    return int(parsed.timestamp() * 1000)


class ProjectApiClient:
    """Small wrapper around the podcast project HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        timeout: int = 30,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._session = session or requests.Session()

    @staticmethod
    def extract_script(project: Dict, episode_key: EpisodeKey) -> str:
        """Pull one script out of a project record."""
        if episode_key == SINGLE_EPISODE:
            return project.get("scriptContent") or ""
        scripts = project.get("episodeScripts") or {}
        return scripts.get(str(episode_key)) or ""

    def load(self, project_id: str, episode_key: EpisodeKey) -> RemoteRecord:
        """Fetch the current remote script for a partition."""
        episode_key = normalize_episode_key(episode_key)
        project = self._request_with_retry("GET", f"/api/projects/{project_id}")
        return RemoteRecord(
            content=self.extract_script(project, episode_key),
            updated_at=parse_timestamp(project.get("updatedAt")),
        )

    def save(
        self, project_id: str, episode_key: EpisodeKey, content: str
    ) -> RemoteSaveResult:
        """
        Write a script to the project record.

        The current record is read first so the result can report the hash
        of the script this write replaced.
        """
        episode_key = normalize_episode_key(episode_key)
        try:
            project = self._request_with_retry("GET", f"/api/projects/{project_id}")
            prior = self.extract_script(project, episode_key)
            if episode_key == SINGLE_EPISODE:
                updates: Dict[str, object] = {"scriptContent": content}
            else:
                scripts = dict(project.get("episodeScripts") or {})
                scripts[str(episode_key)] = content
                updates = {"episodeScripts": scripts}
            self._request_with_retry("PATCH", f"/api/projects/{project_id}", json=updates)
        except ProjectApiError as exc:
            LOGGER.warning("Save of %s/%s failed: %s", project_id, episode_key, exc)
            return RemoteSaveResult.failure(str(exc))

        return RemoteSaveResult.success(
            remote_content_hash=content_hash(prior),
            remote_content=prior,
        )

    def health_check(self) -> bool:
        """Return True if the API server responds with HTTP 200."""

        try:
            resp = self._session.get(f"{self.base_url}/api/health", timeout=5)
            return resp.ok
        except RequestException:
            return False

    def _request_with_retry(self, method: str, endpoint: str, **kwargs) -> Dict:
        url = f"{self.base_url}{endpoint}"

        for attempt in range(self.max_retries):
            try:
                response: Response = self._session.request(
                    method,
                    url,
                    timeout=self.timeout,
                    **kwargs,
                )
                if response.status_code >= 500:
                    if attempt < self.max_retries - 1:
                        time.sleep(2 ** attempt)
                        continue
                    raise ProjectApiError(f"Server error: {response.text}")
                if response.status_code == 404:
                    raise ProjectApiError(f"Not found: {endpoint}")
                if response.status_code >= 400:
                    raise ProjectApiError(f"Request error ({response.status_code}): {response.text}")

                response.raise_for_status()
                return response.json()
            except Timeout:
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise ProjectApiError("Request timed out")
            except ConnectionError:
                raise ProjectApiError(f"Cannot connect to {self.base_url}")
            except RequestException as exc:
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise ProjectApiError(f"Request failed: {exc}")
            except ValueError as exc:
                raise ProjectApiError(f"Malformed response: {exc}")

        raise ProjectApiError("Exceeded retry budget")
