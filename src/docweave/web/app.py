"""FastAPI application exposing a running docweave engine over HTTP."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Literal

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from docweave import __version__
from docweave.engine import Engine
from docweave.errors import EmbeddingError, WorkerNotReadyError, WorkerTimeoutError

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="docweave", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine: Engine | None = None


def configure(engine: Engine | None) -> None:
    """Attach the engine the endpoints query; ``None`` detaches it."""
    global _engine
    _engine = engine


class SearchPayload(BaseModel):
    query: str
    top_k: int = 10


class ContextPayload(BaseModel):
    query: str
    budget_chars: int | None = None
    top_k: int = 20


def _require_engine() -> Engine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Index not loaded")
    return _engine


async def _run(func, *args: Any, **kwargs: Any) -> Any:
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except WorkerNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except WorkerTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except EmbeddingError as exc:
        LOGGER.error("Embedding provider failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.get("/health")
async def health() -> dict[str, Any]:
    if _engine is None:
        return {"status": "idle", "ready": False}
    return {"status": "ok", "ready": _engine.workers.is_ready, "session": _engine.workers.session_id}


@app.post("/search")
async def search_documents(payload: SearchPayload) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")
    engine = _require_engine()
    top_k = max(1, min(payload.top_k, 50))
    results = await _run(engine.search, query, top_k=top_k)
    return {"results": [result.to_dict() for result in results]}


@app.post("/context")
async def build_context(payload: ContextPayload) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")
    if payload.budget_chars is not None and payload.budget_chars <= 0:
        raise HTTPException(status_code=400, detail="budget_chars must be positive")
    engine = _require_engine()
    assembled = await _run(engine.context, query, budget_chars=payload.budget_chars, top_k=payload.top_k)
    return {
        "context": assembled.text,
        "used_chars": assembled.used_chars,
        "documents": [
            {"path": path, "tier": assembled.tiers[path]} for path in assembled.used_paths
        ],
    }


@app.get("/neighbors/{path:path}")
async def document_neighbors(
    path: str, mode: Literal["simple", "ontology"] = "ontology"
) -> dict[str, List[dict[str, Any]]]:
    engine = _require_engine()
    results = await _run(engine.neighbors, path, mode=mode)
    return {"results": [result.to_dict() for result in results]}


@app.get("/documents")
async def list_documents() -> dict[str, Any]:
    """List indexed documents with index statistics."""
    engine = _require_engine()
    documents = await _run(engine.documents)
    stats = await _run(engine.stats)
    return {"documents": documents, "stats": stats}
