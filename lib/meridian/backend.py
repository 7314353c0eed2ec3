"""Request/response boundary between the Meridian core and the task engine.

Every call is asynchronous and may fail with a :class:`BackendError`
carrying a human-readable message.  The core never talks to the engine
any other way.

Usage::

    backend = HttpBackend("http://127.0.0.1:7777")
    await backend.connect()
    result = await backend.execute(40, {"action": "GetCurrent"})
    await backend.close()
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("meridian.backend")

_DEFAULT_TIMEOUT_S = 30.0
_HEALTH_TIMEOUT_S = 5.0


# ===================================================================
# Errors
# ===================================================================

class BackendError(Exception):
    """A backend call failed.  ``str(exc)`` is safe to show to the user."""


class BackendUnavailableError(BackendError):
    """The backend is not connected or the transport failed."""


class PipelineError(BackendError):
    """The backend answered but reported ``success: false``."""


# ===================================================================
# Abstract Backend
# ===================================================================

class Backend(ABC):
    """Abstract task-engine boundary consumed by every Meridian component."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the backend is currently reachable."""
        ...

    @property
    def supports_orchestrate(self) -> bool:
        """Whether the primary one-shot orchestration entry point exists."""
        return False

    async def connect(self) -> bool:
        """Establish (or probe) the connection; returns :attr:`connected`."""
        return self.connected

    @abstractmethod
    async def execute(self, pipeline_id: int, input: Dict[str, Any]) -> Dict[str, Any]:
        """Run *pipeline_id* with *input* and return its output payload."""
        ...

    async def orchestrate(self, request: Dict[str, Any]) -> Dict[str, Any]:
        raise BackendUnavailableError("Orchestration entry point not available")

    @abstractmethod
    async def task_list(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def task_status(self, task_id: int) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def task_cancel(self, task_id: int) -> bool:
        ...

    @abstractmethod
    async def config_get(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def config_set(self, updates: Dict[str, Any]) -> bool:
        ...

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def close(self) -> None:
        return None


# ===================================================================
# HttpBackend
# ===================================================================

class HttpBackend(Backend):
    """Backend spoken to over HTTP/JSON with ``httpx.AsyncClient``.

    Parameters
    ----------
    base_url:
        Root URL of the engine (e.g. ``http://127.0.0.1:7777``).
    timeout_s:
        Per-request timeout.
    orchestrate_enabled:
        Whether ``POST /orchestrate`` is exposed by this engine build.
    client:
        Optional pre-built client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        orchestrate_enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._orchestrate_enabled = orchestrate_enabled
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout_s)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def supports_orchestrate(self) -> bool:
        return self._orchestrate_enabled

    @property
    def base_url(self) -> str:
        return self._base_url

    async def connect(self) -> bool:
        """Probe ``/health`` and record whether the engine is reachable."""
        try:
            resp = await self._client.get("/health", timeout=_HEALTH_TIMEOUT_S)
            self._connected = resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Backend not reachable at %s: %s", self._base_url, exc)
            self._connected = False
        return self._connected

    # ---- pipeline / orchestration ------------------------------------------

    async def execute(self, pipeline_id: int, input: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"pipeline_id": pipeline_id, "input": input}
        data = await self._request("POST", "/pipeline/execute", json=payload)
        return _unwrap(data, f"Pipeline {pipeline_id} failed")

    async def orchestrate(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if not self._orchestrate_enabled:
            raise BackendUnavailableError("Orchestration entry point not available")
        return await self._request("POST", "/orchestrate", json=request)

    # ---- tasks -------------------------------------------------------------

    async def task_list(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/tasks")
        tasks = data.get("tasks", []) if isinstance(data, dict) else data
        return list(tasks or [])

    async def task_status(self, task_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/tasks/{task_id}")

    async def task_cancel(self, task_id: int) -> bool:
        data = await self._request("POST", f"/tasks/{task_id}/cancel")
        return bool(data.get("success", False))

    # ---- config / stats ----------------------------------------------------

    async def config_get(self) -> Dict[str, Any]:
        return await self._request("GET", "/config")

    async def config_set(self, updates: Dict[str, Any]) -> bool:
        data = await self._request("POST", "/config", json=updates)
        return bool(data.get("success", False))

    async def get_stats(self) -> Dict[str, Any]:
        return await self._request("GET", "/system/stats")

    async def close(self) -> None:
        self._connected = False
        await self._client.aclose()

    # ---- internal ----------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"Backend returned HTTP {exc.response.status_code} for {path}"
            ) from exc
        except httpx.HTTPError as exc:
            self._connected = False
            raise BackendUnavailableError(
                f"Cannot reach backend at {self._base_url}: {exc}"
            ) from exc

        self._connected = True
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"Backend sent malformed JSON for {path}") from exc


def _unwrap(data: Any, default_error: str) -> Dict[str, Any]:
    """Return the pipeline output, raising :class:`PipelineError` on failure replies."""
    if not isinstance(data, dict):
        return {"output": data}
    if data.get("success") is False:
        raise PipelineError(str(data.get("error") or default_error))
    output = data.get("output")
    if isinstance(output, dict):
        return output
    return data
