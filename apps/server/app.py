"""FastAPI app for Ollama-style text completions.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`cpullm/engine`).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from cpullm.engine.engine import LlmEngine
from cpullm.engine.errors import ContextOverflowError, GenerationFailed, ModelNotLoaded, ValidationError
from cpullm.engine.service import RequestService

logger = logging.getLogger(__name__)


def create_app(
    *,
    engine: LlmEngine,
    model_id: str | None = None,
    http_max_concurrency: int | None = None,
    http_max_completion_tokens: int | None = None,
) -> FastAPI:
    app = FastAPI(title="cpullm Inference Server", version="0.1.0")

    http_semaphore: asyncio.Semaphore | None = None
    if http_max_concurrency is not None:
        try:
            http_max_concurrency = int(http_max_concurrency)
        except Exception as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if http_max_concurrency > 0:
            http_semaphore = asyncio.Semaphore(http_max_concurrency)
        elif http_max_concurrency < 0:
            raise ValueError("http_max_concurrency must be >= 0")

    if http_max_completion_tokens is not None:
        try:
            http_max_completion_tokens = int(http_max_completion_tokens)
        except Exception as exc:
            raise ValueError("http_max_completion_tokens must be an integer") from exc
        if http_max_completion_tokens <= 0:
            raise ValueError("http_max_completion_tokens must be > 0")

    service = RequestService(
        engine,
        model_id=model_id,
        max_completion_tokens=http_max_completion_tokens,
    )
    app.state.service = service

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, payload: Any) -> dict[str, Any]:
        # The session checks `cancel` once per token; the worker thread cannot be interrupted.
        cancel = threading.Event()
        task = asyncio.create_task(run_in_threadpool(service.generate, payload, cancel=cancel))
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        done, _ = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done and not task.done():
            cancel.set()
            try:
                await task
            except Exception:
                logger.debug("Generation for disconnected client ended with an error.", exc_info=True)
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _try_acquire_semaphore() -> None:
        if http_semaphore is None:
            return
        try:
            await asyncio.wait_for(http_semaphore.acquire(), timeout=0.001)
        except TimeoutError as exc:
            raise HTTPException(status_code=429, detail="Server is busy") from exc

    # -------------------------------------------------------------------------
    # Health & Model
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/model")
    async def model() -> dict[str, Any]:
        info = engine.model_info
        return {
            "model": service.model_id,
            "loaded": info is not None,
            "n_ctx": info.n_ctx if info is not None else None,
            "n_vocab": info.n_vocab if info is not None else None,
        }

    # -------------------------------------------------------------------------
    # Generate
    # -------------------------------------------------------------------------

    @app.post("/api/generate")
    async def generate(request: Request) -> Any:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc

        await _try_acquire_semaphore()
        try:
            result = await _run_with_disconnect_cancellation(request, payload)
        except HTTPException:
            raise
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ModelNotLoaded as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except GenerationFailed as exc:
            status_code = 400 if isinstance(exc.error, ContextOverflowError) else 500
            return JSONResponse(
                {
                    "error": str(exc.error),
                    "error_type": exc.error.reason,
                    "model": service.model_id,
                    "response": exc.result.text,
                    "done": False,
                },
                status_code=status_code,
            )
        except Exception as exc:
            logger.exception("Unhandled error in /api/generate")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            if http_semaphore is not None:
                http_semaphore.release()

        return JSONResponse(result)

    return app
