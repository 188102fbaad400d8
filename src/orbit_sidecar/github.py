"""Minimal GitHub REST client for release assets and workflow jobs.

Only the calls the supervisor needs are implemented: latest release, release
by tag, the authorized byte stream of one release asset, and the job list of
a workflow run.
"""

from __future__ import annotations

import json
import logging
import shutil
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .errors import ArtifactHostError
from .models import ORBIT_AGENT_REPO, ORBIT_ORG, AssetRef, ReleasePayload, WorkflowJobPayload, WorkflowJobsPage

logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"
_USER_AGENT = "orbit-sidecar"
_DEFAULT_TIMEOUT_SECONDS = 30
_COPY_CHUNK_BYTES = 1 << 16
_JOBS_PER_PAGE = 100


class ArtifactHost(Protocol):
    """Operations the resolver and installer need from a release index."""

    def latest_tag(self) -> str: ...

    def release_by_tag(self, tag: str) -> ReleasePayload | None: ...

    def asset_locator(self, asset: AssetRef) -> str: ...

    def fetch(self, locator: str, dest: Path) -> int: ...


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Surface 3xx responses as ``HTTPError`` so the Location header can be read."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001,ANN201
        return None


class GitHubClient:
    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.github.com",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._no_redirect = urllib.request.build_opener(_NoRedirect)

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {
            "Accept": accept,
            "User-Agent": _USER_AGENT,
            "X-GitHub-Api-Version": _API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def get_json(self, path: str, query: dict[str, Any] | None = None) -> Any:
        """GET an API path and return the parsed JSON body.

        Raises:
            ArtifactHostError: On HTTP errors (``status`` set), unreachable
                host, or a body that is not JSON.
        """
        url = f"{self.api_url}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        request = urllib.request.Request(url, method="GET", headers=self._headers())
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code != 404:
                logger.error("HTTP %d from %s", exc.code, url)
            raise ArtifactHostError(f"HTTP {exc.code} from {url}: {exc.reason}", status=exc.code) from exc
        except urllib.error.URLError as exc:
            logger.error("URL error reaching %s: %s", url, exc.reason)
            raise ArtifactHostError(f"Failed to reach {url}: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise ArtifactHostError(f"Invalid JSON response from {url}") from exc

    def asset_locator(self, asset_url: str) -> str:
        """Exchange an asset API URL for a short-lived download URL.

        The asset endpoint answers ``Accept: application/octet-stream`` with a
        302 to a pre-signed URL. Hosts that stream the bytes directly get the
        asset URL itself back, which ``stream_to`` then fetches with
        credentials.
        """
        request = urllib.request.Request(
            asset_url,
            method="GET",
            headers=self._headers(accept="application/octet-stream"),
        )
        try:
            with self._no_redirect.open(request, timeout=self.timeout):
                return asset_url
        except urllib.error.HTTPError as exc:
            location = exc.headers.get("Location") if exc.headers is not None else None
            if exc.code in (301, 302, 303, 307, 308) and location:
                return location
            raise ArtifactHostError(f"HTTP {exc.code} from {asset_url}: {exc.reason}", status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise ArtifactHostError(f"Failed to reach {asset_url}: {exc.reason}") from exc

    def stream_to(self, url: str, dest: Path) -> int:
        """Stream ``url`` into ``dest`` and return the number of bytes written.

        Credentials are only attached when the URL points back at the API
        host; pre-signed storage URLs reject an extra Authorization header.
        """
        authorized = url.startswith(self.api_url)
        headers = self._headers(accept="application/octet-stream") if authorized else {"User-Agent": _USER_AGENT}
        request = urllib.request.Request(url, method="GET", headers=headers)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response, dest.open("wb") as handle:
                shutil.copyfileobj(response, handle, _COPY_CHUNK_BYTES)
                written = handle.tell()
        except urllib.error.HTTPError as exc:
            raise ArtifactHostError(f"HTTP {exc.code} while downloading: {exc.reason}", status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise ArtifactHostError(f"Download failed: {exc.reason}") from exc
        return written


class ReleaseIndex:
    """Release index of one repository, backed by the GitHub REST API."""

    def __init__(self, client: GitHubClient, *, owner: str = ORBIT_ORG, repo: str = ORBIT_AGENT_REPO) -> None:
        self.client = client
        self.owner = owner
        self.repo = repo

    @property
    def _base(self) -> str:
        return f"repos/{self.owner}/{self.repo}"

    def latest_tag(self) -> str:
        logger.debug("Fetching latest release tag ...")
        payload = self.client.get_json(f"{self._base}/releases/latest")
        release = _validate_release(payload, "latest")
        logger.debug("Latest release tag: %s", release.tag_name)
        return release.tag_name

    def release_by_tag(self, tag: str) -> ReleasePayload | None:
        logger.debug("Fetching release: %s", tag)
        try:
            payload = self.client.get_json(f"{self._base}/releases/tags/{urllib.parse.quote(tag, safe='')}")
        except ArtifactHostError as exc:
            if exc.status == 404:
                return None
            raise
        return _validate_release(payload, tag)

    def asset_locator(self, asset: AssetRef) -> str:
        return self.client.asset_locator(asset.download_locator)

    def fetch(self, locator: str, dest: Path) -> int:
        return self.client.stream_to(locator, dest)


def list_run_jobs(client: GitHubClient, repository: str, run_id: str) -> list[WorkflowJobPayload]:
    """Return every job of one workflow run, following pagination."""
    jobs: list[WorkflowJobPayload] = []
    page = 1
    while True:
        payload = client.get_json(
            f"repos/{repository}/actions/runs/{run_id}/jobs",
            query={"per_page": _JOBS_PER_PAGE, "page": page},
        )
        try:
            parsed = WorkflowJobsPage.model_validate(payload)
        except ValidationError as exc:
            raise ArtifactHostError(f"Unexpected jobs payload for run {run_id}: {exc}") from exc
        jobs.extend(parsed.jobs)
        if not parsed.jobs or len(jobs) >= parsed.total_count:
            return jobs
        page += 1


def _validate_release(payload: Any, label: str) -> ReleasePayload:
    try:
        return ReleasePayload.model_validate(payload)
    except ValidationError as exc:
        raise ArtifactHostError(f"Unexpected release payload for {label}: {exc}") from exc
