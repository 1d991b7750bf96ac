from fastapi import FastAPI, File, UploadFile, Form, Request, Query, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from loguru import logger
import psutil

from ecobites.cache import ResolverCache
from ecobites.catalog import CatalogClient
from ecobites.config import get_runtime_config_snapshot
from ecobites.contributions import approve_contribution, reject_contribution, submit_contribution
from ecobites.db import ActivityStore, SharedProductStore, close_db, get_db, ping_db
from ecobites.errors import ResolverError, UpstreamError, ValidationError
from ecobites.logger import configure_logging
from ecobites.matcher import SharedDatabaseMatcher
from ecobites.profile import compute_profile_stats
from ecobites.resolver import ProductResolver
from ecobites.schemas import (
    AnalyzeResponse,
    ContributionRequest,
    HealthResponse,
    HistoryEntryRequest,
    HistoryResponse,
    ProductResponse,
    ProfileStats,
    SearchResponse,
)
from ecobites.utils import validate_image_upload
from ecobites.vision import VisionAdapter, build_default_variants

app = FastAPI(title="EcoBites Product Resolution API")

# CORS (adjust in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_services(target: FastAPI) -> None:
    """Construct the process-wide cache, clients and stores once."""
    cache = ResolverCache()
    catalog = CatalogClient(cache)
    db = get_db()
    shared = SharedProductStore(db)
    activity = ActivityStore(db)
    vision = VisionAdapter(build_default_variants())
    target.state.db = db
    target.state.cache = cache
    target.state.catalog = catalog
    target.state.shared_store = shared
    target.state.activity_store = activity
    target.state.resolver = ProductResolver(cache, catalog, SharedDatabaseMatcher(shared), vision)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    # Tests install their own services before the app starts
    if getattr(app.state, "resolver", None) is None:
        build_services(app)
    logger.info(f"EcoBites API starting config={get_runtime_config_snapshot()}")


@app.on_event("shutdown")
async def shutdown_event():
    catalog = getattr(app.state, "catalog", None)
    if catalog is not None:
        await catalog.aclose()
    await close_db()


@app.exception_handler(ResolverError)
async def resolver_error_handler(request: Request, exc: ResolverError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "kind": type(exc).__name__})


@app.get("/")
async def root():
    return JSONResponse({"message": "EcoBites API is running. See /docs for API specs."})


@app.get("/health", response_model=HealthResponse)
async def health(request: Request):
    try:
        proc = psutil.Process()
        mem = proc.memory_info().rss
        cpu = proc.cpu_percent(interval=None)
    except Exception:
        mem = 0
        cpu = 0
    db = getattr(request.app.state, "db", None)
    db_ok = await ping_db(db) if db is not None else False
    return HealthResponse(status="ok", cpu_percent=cpu, rss_bytes=mem, db=db_ok)


@app.get("/api/search", response_model=SearchResponse)
async def search(request: Request, query: str = Query("")):
    products = await request.app.state.resolver.resolve_by_text(query)
    return SearchResponse(products=products)


@app.get("/api/product/{product_id}", response_model=ProductResponse)
async def product_detail(request: Request, product_id: str):
    product = await request.app.state.resolver.resolve_by_id(product_id)
    return ProductResponse(product=product)


@app.post("/api/analyze", response_model=AnalyzeResponse)
async def analyze(
    request: Request,
    image: Optional[UploadFile] = File(None),
    user_id: Optional[str] = Form(None),
):
    if image is None:
        raise ValidationError("No image file provided")
    image_bytes, image_info = await validate_image_upload(image)
    logger.debug(f"analyze upload size={image_info['size']} format={image_info['format']}")

    result = await request.app.state.resolver.resolve_by_image(image_bytes, image_info["content_type"])

    if user_id and not await request.is_disconnected():
        # Storage is best-effort; do not fail request
        await request.app.state.activity_store.record_scan(
            user_id, result.product.model_dump(by_alias=True), result.provenance
        )
    return AnalyzeResponse(data=result.product, provenance=result.provenance, degraded=result.degraded)


@app.get("/api/history", response_model=HistoryResponse)
async def history(request: Request, user_id: Optional[str] = None, limit: int = Query(10, ge=1, le=100)):
    try:
        entries = await request.app.state.activity_store.recent_searches(limit=limit, user_id=user_id)
    except Exception as e:
        raise UpstreamError("Failed to load search history") from e
    return HistoryResponse(history=entries)


@app.post("/api/history", response_model=HistoryResponse, status_code=status.HTTP_201_CREATED)
async def add_history(request: Request, entry: HistoryEntryRequest):
    stored = await request.app.state.activity_store.record_search(
        entry.query.strip(), product_id=entry.product_id, user_id=entry.user_id
    )
    return HistoryResponse(history=stored)


@app.post("/api/contributions", status_code=status.HTTP_201_CREATED)
async def contribute(request: Request, body: ContributionRequest):
    stored = await submit_contribution(request.app.state.shared_store, body)
    return {"contribution": stored}


@app.get("/api/contributions/pending")
async def pending_contributions(request: Request, limit: int = Query(50, ge=1, le=200)):
    return {"contributions": await request.app.state.shared_store.list_pending(limit=limit)}


@app.post("/api/contributions/{pending_id}/approve")
async def approve(request: Request, pending_id: str):
    approved = await approve_contribution(
        request.app.state.shared_store, request.app.state.activity_store, pending_id
    )
    return {"product": approved}


@app.delete("/api/contributions/{pending_id}")
async def reject(request: Request, pending_id: str):
    await reject_contribution(request.app.state.shared_store, pending_id)
    return {"deleted": pending_id}


@app.get("/api/profile/{user_id}", response_model=ProfileStats)
async def profile(request: Request, user_id: str):
    return await compute_profile_stats(
        request.app.state.shared_store, request.app.state.activity_store, user_id
    )


@app.get("/api/cache")
async def cache_stats(request: Request):
    return request.app.state.cache.stats()


@app.delete("/api/cache")
async def cache_clear(request: Request):
    return request.app.state.cache.clear()
