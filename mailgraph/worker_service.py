"""Service entrypoint that runs the worker pool behind a health endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import os

from fastapi import FastAPI

from mailgraph.core.structured_logging import configure_logging, setup_error_reporting
from mailgraph.worker import run_worker

app = FastAPI()
_worker_task: asyncio.Task | None = None
_stop: asyncio.Event | None = None


@app.get("/health")
def health() -> dict:
    running = _worker_task is not None and not _worker_task.done()
    return {"status": "ok" if running else "stopped"}


@app.on_event("startup")
async def _startup() -> None:
    global _worker_task, _stop
    configure_logging()
    setup_error_reporting("mailgraph-worker")
    _stop = asyncio.Event()
    _worker_task = asyncio.create_task(run_worker(stop=_stop))


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _stop:
        _stop.set()
    if _worker_task:
        _worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _worker_task


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    # nosec B104 - container deployments bind to all interfaces.
    uvicorn.run("mailgraph.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
