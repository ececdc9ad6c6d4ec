"""
journalq - Journal question answering service
Run with: uvicorn main:app --reload --port 8000

Supports two modes:
- LITE MODE: No provider credentials - in-memory store, deterministic answers
- FULL MODE: With credentials - Supabase store, semantic search, model-written answers
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()  # Must be before importing config

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from journalq import __version__
from journalq.agents import PerformanceBudget, Question, QueryOrchestrator, Turn, create_query_orchestrator
from journalq.cache import ResultCache
from journalq.config import Config
from journalq.embeddings import EmbeddingService, create_embedding_service
from journalq.llm import BaseLLMClient, create_llm_client_from_config
from journalq.metrics import InMemoryMetricsSink
from journalq.retrieval import InMemoryJournalStore, RetrievalStore, SupabaseJournalStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent

# Globals
_cfg: Config = None
_store: RetrievalStore = None
_embedder: EmbeddingService = None
_llm: BaseLLMClient = None
_cache: ResultCache = None
_metrics: InMemoryMetricsSink = None
_orchestrator: QueryOrchestrator = None


def _build_store(cfg: Config) -> RetrievalStore:
    if cfg.is_supabase_available():
        return SupabaseJournalStore(cfg.supabase_url, cfg.supabase_service_key, cfg.store_timeout)
    path = Path(cfg.journal_data_file)
    if not path.is_absolute():
        path = BASE_DIR / path
    return InMemoryJournalStore.from_file(path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cfg, _store, _embedder, _llm, _cache, _metrics, _orchestrator

    print("\n" + "="*50)
    print("  journalq Startup")
    print("="*50 + "\n")

    _cfg = Config()  # Fresh instance after dotenv loaded

    _store = _build_store(_cfg)
    print(f"Journal store: {_store.name}")

    _embedder = create_embedding_service(
        provider=_cfg.embedding_provider,
        openai_api_key=_cfg.openai_api_key,
        openai_model=_cfg.openai_embed_model,
        dimensions=_cfg.embed_dimensions,
        aws_region=_cfg.aws_region,
        titan_model=_cfg.titan_embed_model,
    )
    print(f"Embeddings: {_embedder.provider if _embedder.available else 'disabled'}")

    # AUTO-INDEX: entries loaded from file without vectors
    if isinstance(_store, InMemoryJournalStore) and _embedder.available and _store.unindexed_count:
        result = await _store.index_embeddings(_embedder)
        print(f"  Indexed {result['indexed']} journal entries ({result['errors']} errors)")

    _llm = create_llm_client_from_config(_cfg)
    if _llm.available:
        print(f"Completion: {_llm.provider} ({_llm.config.model})")
    else:
        print("Completion: disabled (deterministic answers only)")

    _cache = ResultCache(_cfg.cache_ttl)
    await _cache.connect(_cfg.redis_url)

    _metrics = InMemoryMetricsSink()

    recorder = _store if _cfg.enable_query_analytics else None
    _orchestrator = create_query_orchestrator(
        store=_store,
        embedder=_embedder,
        llm=_llm,
        cfg=_cfg,
        cache=_cache,
        recorder=recorder,
        metrics=_metrics,
    )

    mode = "FULL" if _llm.available and _embedder.available else "LITE"
    print("\n" + "="*50)
    print(f"  journalq Running in {mode} MODE")
    print("="*50)
    if mode == "LITE":
        print("  (Add provider credentials to .env for semantic search and model answers)")
    print(f"\n  API: http://localhost:8000")
    print(f"  Docs: http://localhost:8000/docs\n")

    yield

    # Shutdown
    await _orchestrator.executor.drain()
    await _cache.close()
    await _llm.close()
    await _embedder.close()
    await _store.close()


app = FastAPI(title="journalq", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Sanitized global exception handler - never exposes internal details."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred. Please try again later."
            }
        },
        headers={"Access-Control-Allow-Origin": "*"}
    )


class TurnModel(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    text: str


class QueryRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)
    owner_id: str = Field(..., min_length=1)
    thread_id: str = ""
    history: list[TurnModel] = Field(default_factory=list)
    timezone: str = "UTC"
    now: datetime | None = None
    max_latency_ms: int | None = Field(default=None, ge=100, le=60000)
    max_parallel: int | None = Field(default=None, ge=1, le=8)
    trace: bool = True


@app.post("/api/query")
async def query(req: QueryRequest):
    question = Question(
        text=req.text,
        thread_id=req.thread_id,
        owner_id=req.owner_id,
        history=tuple(Turn(role=t.role, text=t.text) for t in req.history),
        now=req.now,
        timezone=req.timezone,
    )
    budget = PerformanceBudget(
        max_latency_ms=req.max_latency_ms or _cfg.max_latency_ms,
        max_parallel=req.max_parallel or _cfg.max_parallel,
    )
    answer = await _orchestrator.run_query(question, budget, trace_enabled=req.trace)
    return answer.to_dict()


@app.get("/api/health")
async def health():
    """Health check with mode status"""
    llm_ok = _llm.available if _llm else False
    embedder_ok = _embedder.available if _embedder else False
    mode = "FULL" if llm_ok and embedder_ok else "LITE"

    return {
        "status": "healthy",
        "mode": mode,
        "store": _store.get_info() if _store else None,
        "embedder": embedder_ok,
        "llm": llm_ok,
        "llm_provider": _llm.provider if _llm else None,
        "redis": _cache.available if _cache else False,
        "pipeline": _orchestrator.get_stats() if _orchestrator else None,
    }


@app.get("/api/metrics")
async def metrics():
    return _metrics.snapshot()


@app.get("/api/cache/stats")
async def cache_stats():
    return await _cache.stats()


@app.delete("/api/cache")
async def clear_cache():
    await _cache.clear()
    return {"status": "cleared"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
