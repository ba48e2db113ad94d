"""External job system — dispatch of tasks that have no local executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from cadence.config import settings
from cadence.errors import JobDispatchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """A job accepted by the external system. ``id`` correlates the callback."""

    id: str
    job_type: str
    status: str = "pending"


class JobClient(Protocol):
    async def create_job(
        self,
        job_type: str,
        job_input: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> JobRecord: ...


class JobTypeRegistry:
    """Maps owner refs to external job types.

    Built once at startup (usually from ``JOB_TYPE_MAPPINGS``) and injected
    into the executor.
    """

    def __init__(self, mappings: dict[str, str] | None = None) -> None:
        self._mappings: dict[str, str] = dict(mappings or {})

    @classmethod
    def from_settings(cls) -> JobTypeRegistry:
        return cls(settings.get_job_type_mappings())

    def register(self, owner_ref: str, job_type: str) -> None:
        self._mappings[owner_ref] = job_type

    def resolve(self, owner_ref: str) -> str | None:
        return self._mappings.get(owner_ref)

    def as_dict(self) -> dict[str, str]:
        return dict(self._mappings)


class HttpJobClient:
    """Creates jobs on an HTTP job service.

    ``POST {base_url}/jobs`` with ``{"type", "input", "metadata"}``; the
    service answers with the job document, whose ``id`` (or ``_id``) is used
    as the correlation id.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = (base_url or settings.job_service_url).rstrip("/")
        self._token = token if token is not None else settings.job_service_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        """Return (and lazily create) the shared aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._session

    async def create_job(
        self,
        job_type: str,
        job_input: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> JobRecord:
        if not self._base_url:
            msg = "Job service not configured (JOB_SERVICE_URL is empty)"
            raise JobDispatchError(str(job_input.get("taskId", "")), msg)

        body = {"type": job_type, "input": job_input, "metadata": metadata or {}}
        session = self._get_session()
        async with session.post(f"{self._base_url}/jobs", json=body) as resp:
            if resp.status >= 400:
                text = await resp.text()
                logger.error("Job creation failed: status=%d body=%s", resp.status, text[:200])
                msg = f"job service returned HTTP {resp.status}"
                raise JobDispatchError(str(job_input.get("taskId", "")), msg)
            data = await resp.json()

        job_id = str(data.get("id") or data.get("_id") or "")
        if not job_id:
            msg = "job service response has no id"
            raise JobDispatchError(str(job_input.get("taskId", "")), msg)
        logger.info("Created %s job %s", job_type, job_id)
        return JobRecord(id=job_id, job_type=job_type, status=str(data.get("status", "pending")))

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
