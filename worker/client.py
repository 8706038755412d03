"""Worker client — polls a work pool over the Engine API and reports run state."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core import errors
from core.state import FlowRun

logger = logging.getLogger(__name__)

# error class name in the response body → exception raised client-side
_ERRORS: dict[str, type[errors.EngineError]] = {
    cls.__name__: cls
    for cls in (
        errors.ConflictError,
        errors.NotFoundError,
        errors.SchemaValidationError,
        errors.UnknownPoolError,
        errors.UnknownQueueError,
        errors.QueueFullError,
        errors.ClaimConflictError,
        errors.InvalidStateTransitionError,
        errors.StoreUnavailableError,
    )
}


class WorkerClient:
    """Async client a worker uses to claim runs and report their progress.

    Usage::

        async with WorkerClient("http://localhost:8000", "worker-1") as client:
            for run in await client.claim("k8s", max_runs=2):
                await client.start(run.id)
                ...
                await client.complete(run.id)
    """

    def __init__(
        self,
        base_url: str,
        worker_name: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30,
    ):
        self.worker_name = worker_name
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), transport=transport, timeout=timeout,
        )

    async def __aenter__(self) -> WorkerClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def claim(
        self,
        pool_name: str,
        queue_names: list[str] | None = None,
        max_runs: int = 1,
    ) -> list[FlowRun]:
        data = await self._post(f"/work_pools/{pool_name}/claim", {
            "worker": self.worker_name,
            "queue_names": queue_names or [],
            "max_runs": max_runs,
        })
        return [FlowRun.model_validate(r) for r in data]

    async def start(self, run_id: str) -> FlowRun:
        return await self._report(run_id, "start", {"worker": self.worker_name})

    async def heartbeat(self, run_id: str) -> FlowRun:
        """Returns the run as the server sees it; check ``status`` for cancellation."""
        return await self._report(run_id, "heartbeat", {"worker": self.worker_name})

    async def complete(self, run_id: str) -> FlowRun:
        return await self._report(run_id, "complete", {"worker": self.worker_name})

    async def fail(self, run_id: str, message: str = "") -> FlowRun:
        return await self._report(
            run_id, "fail", {"worker": self.worker_name, "message": message},
        )

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _report(self, run_id: str, action: str, body: dict) -> FlowRun:
        return FlowRun.model_validate(await self._post(f"/flow_runs/{run_id}/{action}", body))

    async def _post(self, path: str, body: dict) -> Any:
        resp = await self._http.post(path, json=body)
        if resp.is_error:
            _raise_for(resp)
        return resp.json()


def _raise_for(resp: httpx.Response) -> None:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    detail = body.get("detail") or resp.text
    cls = _ERRORS.get(body.get("error", ""))
    logger.warning(
        "Engine request failed",
        extra={"status": resp.status_code, "url": str(resp.request.url), "error": body.get("error")},
    )
    if cls is errors.SchemaValidationError:
        raise cls(str(detail), errors=body.get("errors"))
    if cls is not None:
        raise cls(str(detail))
    resp.raise_for_status()
