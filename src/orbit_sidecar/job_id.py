"""Best-effort lookup of the numeric job id of the current pipeline job.

The runner environment only exposes the job's workflow key (``GITHUB_JOB``),
not the numeric id the API uses. The runner's worker log does record the
job's display name, which can be matched against the run's job list. Both
sources are informal, so every failure degrades to the fallback id.
"""

from __future__ import annotations

import glob
import json
import logging
import os
import re
from pathlib import Path
from typing import Callable, Protocol

from .errors import SidecarError
from .github import GitHubClient, list_run_jobs
from .models import WorkflowJobPayload

logger = logging.getLogger(__name__)

JOB_DISPLAY_NAME_RE = re.compile(r'"jobDisplayName"\s*:\s*"((?:[^"\\]|\\.)*)"')

JobLister = Callable[[], list[WorkflowJobPayload]]


class JobIdProvider(Protocol):
    def job_id(self) -> str | None: ...


def newest_worker_log(pattern: str) -> Path | None:
    candidates = [Path(path) for path in glob.glob(pattern)]
    files = [path for path in candidates if path.is_file()]
    if not files:
        return None
    return max(files, key=lambda path: path.stat().st_mtime)


def read_job_display_name(log_path: Path) -> str | None:
    """Return the last ``jobDisplayName`` recorded in a worker log."""
    text = log_path.read_text(encoding="utf-8", errors="replace")
    matches = JOB_DISPLAY_NAME_RE.findall(text)
    if not matches:
        return None
    return json.loads(f'"{matches[-1]}"')


class WorkerLogJobIdProvider:
    """Derive the job id by display name from the worker log and the run's job list."""

    def __init__(self, *, log_glob: str, list_jobs: JobLister) -> None:
        self.log_glob = log_glob
        self._list_jobs = list_jobs

    @classmethod
    def from_environment(cls, client: GitHubClient, *, log_glob: str) -> "WorkerLogJobIdProvider":
        repository = os.getenv("GITHUB_REPOSITORY", "")
        run_id = os.getenv("GITHUB_RUN_ID", "")

        def _list() -> list[WorkflowJobPayload]:
            if not repository or not run_id:
                raise ValueError("GITHUB_REPOSITORY and GITHUB_RUN_ID are required to list run jobs")
            return list_run_jobs(client, repository, run_id)

        return cls(log_glob=log_glob, list_jobs=_list)

    def job_id(self) -> str | None:
        log_path = newest_worker_log(self.log_glob)
        if log_path is None:
            logger.debug("No worker log matches %s", self.log_glob)
            return None
        display_name = read_job_display_name(log_path)
        if display_name is None:
            logger.debug("No job display name in %s", log_path)
            return None
        logger.debug("Job display name from worker log: %s", display_name)
        for job in self._list_jobs():
            if job.name == display_name:
                return str(job.id)
        logger.debug("No job named %r in the current run", display_name)
        return None


def derive_job_id(provider: JobIdProvider | None, fallback: str) -> str:
    """Ask ``provider`` for the job id, degrading to ``fallback`` on any failure."""
    if provider is None:
        return fallback
    try:
        job_id = provider.job_id()
    except (OSError, ValueError, SidecarError) as exc:
        logger.warning("Unable to derive job id, using %s: %s", fallback or "<empty>", exc)
        return fallback
    if not job_id:
        logger.warning("No matching job found, using %s", fallback or "<empty>")
        return fallback
    return job_id
