import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from auth import AdminGate, clear_session, extract_credentials, issue_session, require_admin
from categories import group_categories
from database import DealStore, MongoDealStore, create_store
from display import display_values
from errors import BackendUnavailable, DealNotFound, DuplicateDeal, InvalidPayload, StoreError, Unauthorized
from logger import setup_logging
from query import DealQuery, home_feed, run_query
from schemas import DealIn, DealPatch, TokenIn
from settings import Settings, load_settings

logger = logging.getLogger("coursespeak.api")

ADMIN_PAGE_SIZE = 20


# -------------------------------
# Utilities
# -------------------------------

def get_store(request: Request) -> DealStore:
    return request.app.state.store


def error_body(error: str, code: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": error, "code": code, **extra}


async def read_json_object(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidPayload("Invalid JSON")
    if not isinstance(body, dict):
        raise InvalidPayload("Request body must be a JSON object")
    return body


def empty_page(page_size: int) -> Dict[str, Any]:
    return {"items": [], "total": 0, "page": 1, "pageSize": page_size, "totalPages": 0}


# -------------------------------
# Error mapping
# -------------------------------

async def handle_not_found(request: Request, exc: DealNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content=error_body("Deal not found", "NOT_FOUND"))


async def handle_duplicate(request: Request, exc: DuplicateDeal) -> JSONResponse:
    return JSONResponse(status_code=409, content=error_body(str(exc), "DUPLICATE_ID"))


async def handle_invalid(request: Request, exc: InvalidPayload) -> JSONResponse:
    return JSONResponse(status_code=400, content=error_body("Invalid request body", "VALIDATION_ERROR", details=str(exc)))


async def handle_unauthorized(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=401, content=error_body("Unauthorized", "UNAUTHORIZED", message=exc.message))


async def handle_store_error(request: Request, exc: StoreError) -> JSONResponse:
    # the cause stays in the server log only
    cause = getattr(exc, "cause", None)
    logger.error("%s %s failed: %s (%r)", request.method, request.url.path, exc, cause)
    return JSONResponse(status_code=500, content=error_body("Operation failed", "BACKEND_UNAVAILABLE"))


# -------------------------------
# Public routes
# -------------------------------

router = APIRouter()


@router.get("/")
async def read_root():
    return {"message": "Coursespeak backend running"}


@router.get("/test")
async def test_store(request: Request):
    store = get_store(request)
    response = {
        "backend": "✅ Running",
        "store": store.backend_name,
        "store_status": "❌ Not Available",
        "deals": None,
    }
    if await store.ping():
        response["store_status"] = "✅ Available"
        try:
            response["deals"] = len(await store.read_all())
            response["store_status"] = "✅ Connected & Working"
        except BackendUnavailable as e:
            response["store_status"] = f"⚠️ Available but Error: {str(e)[:50]}"
    return response


@router.get("/api/deals")
async def list_deals(
    request: Request,
    q: Optional[str] = None,
    category: Optional[str] = None,
    provider: Optional[str] = None,
    sort: Optional[str] = None,
    free_only: Optional[str] = Query(None, alias="freeOnly"),
    page: Optional[str] = None,
    page_size: Optional[str] = Query(None, alias="pageSize"),
):
    query = DealQuery.from_params(q, category, provider, free_only, sort, page, page_size)
    try:
        deals = await get_store(request).read_all()
    except BackendUnavailable as e:
        logger.error("GET /api/deals: %s (%r)", e, e.cause)
        return JSONResponse(status_code=500, content={"error": "Failed to load deals"})
    return run_query(deals, query).to_response()


@router.get("/api/deals/{key}")
async def get_deal(request: Request, key: str):
    deal = await get_store(request).find(key)
    return {**deal.to_record(), "display": display_values(deal)}


@router.get("/api/categories")
async def list_categories(request: Request):
    deals = await get_store(request).read_all()
    return {"categories": group_categories(deals), "total": len(deals)}


@router.get("/api/home")
async def home(
    request: Request,
    q: Optional[str] = None,
    category: Optional[str] = None,
    provider: Optional[str] = None,
    sort: Optional[str] = None,
    free_only: Optional[str] = Query(None, alias="freeOnly"),
    page: Optional[str] = None,
):
    query = DealQuery.from_params(q, category, provider, free_only, sort, page)
    try:
        deals = await get_store(request).read_all()
    except BackendUnavailable as e:
        # the homepage degrades to an empty listing instead of failing
        logger.error("GET /api/home: %s (%r)", e, e.cause)
        return {**empty_page(query.page_size), "categories": [], "error": "Deals are temporarily unavailable"}
    return {**home_feed(deals, query).to_response(), "categories": group_categories(deals)}


# -------------------------------
# Admin session
# -------------------------------

@router.post("/api/admin/session")
async def open_session(request: Request):
    body = await read_json_object(request)
    token = (TokenIn.model_validate(body).token or "").strip()
    if not token:
        return JSONResponse(status_code=400, content={"message": "Token is required"})
    if not request.app.state.gate.verify(token):
        return JSONResponse(status_code=401, content={"message": "Invalid token"})
    response = JSONResponse(content={"authenticated": True})
    issue_session(response, token, secure=request.app.state.settings.is_production)
    return response


@router.get("/api/admin/session")
async def check_session(request: Request):
    gate: AdminGate = request.app.state.gate
    if any(gate.verify(c) for c in extract_credentials(request)):
        return {"authenticated": True}
    return JSONResponse(status_code=401, content={"authenticated": False})


@router.delete("/api/admin/session")
async def close_session():
    response = JSONResponse(content={"ok": True})
    clear_session(response)
    return response


@router.post("/api/admin/verify-token")
async def verify_token(request: Request):
    body = await read_json_object(request)
    token = (TokenIn.model_validate(body).token or "").strip()
    if not token:
        return JSONResponse(status_code=400, content={"success": False, "error": "No token provided"})
    if not request.app.state.gate.verify(token):
        return JSONResponse(status_code=401, content={"success": False, "error": "Invalid token"})
    return {"success": True}


# -------------------------------
# Admin deals
# -------------------------------

admin = APIRouter(prefix="/api/admin/deals", dependencies=[Depends(require_admin)])


@admin.get("")
async def admin_list_deals(
    request: Request,
    q: Optional[str] = None,
    page: Optional[str] = None,
    page_size: Optional[str] = Query(None, alias="pageSize"),
):
    """
    Same pipeline as the public listing. Returns the full page shape
    (items, total, page, pageSize, totalPages), not just items and total.
    """
    query = DealQuery.from_params(q=q, page=page, page_size=page_size, default_page_size=ADMIN_PAGE_SIZE)
    try:
        deals = await get_store(request).read_all()
    except BackendUnavailable as e:
        logger.error("GET /api/admin/deals: %s (%r)", e, e.cause)
        return JSONResponse(
            status_code=500,
            content={**empty_page(query.page_size), "error": "Failed to load deals. Please try again later."},
        )
    return run_query(deals, query).to_response()


@admin.post("")
async def admin_create_deal(request: Request):
    body = await read_json_object(request)
    try:
        fields = DealIn.model_validate(body).to_fields()
    except ValidationError as e:
        raise InvalidPayload(str(e))
    deal = await get_store(request).create(fields)
    return {"success": True, "data": deal.to_record()}


@admin.get("/{deal_id}")
async def admin_get_deal(request: Request, deal_id: str):
    deal = await get_store(request).get_by_id(deal_id)
    return {"success": True, "data": deal.to_record()}


@admin.patch("/{deal_id}")
async def admin_update_deal(request: Request, deal_id: str):
    body = await read_json_object(request)
    if not body:
        raise InvalidPayload("Invalid or empty request body")
    try:
        fields = DealPatch.model_validate(body).to_fields()
    except ValidationError as e:
        raise InvalidPayload(str(e))
    if not fields:
        raise InvalidPayload("No updatable fields supplied")
    deal = await get_store(request).update(deal_id, fields)
    return {"success": True, "data": deal.to_record()}


@admin.delete("/{deal_id}", status_code=204)
async def admin_delete_deal(request: Request, deal_id: str):
    await get_store(request).delete(deal_id)
    return Response(status_code=204)


# -------------------------------
# App
# -------------------------------

def _cors_origins(settings: Optional[Settings]) -> List[str]:
    if settings is not None:
        return settings.cors_origins
    return [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()] or ["*"]


def create_app(settings: Optional[Settings] = None, store: Optional[DealStore] = None) -> FastAPI:
    """
    Build the API. Settings are loaded at start-up when not given, so a
    missing ADMIN_TOKEN stops the server before it accepts requests.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        setup_logging(cfg.log_level, cfg.log_dir)
        app.state.settings = cfg
        app.state.gate = AdminGate(cfg.admin_token)
        app.state.store = store or create_store(cfg)
        if isinstance(app.state.store, MongoDealStore):
            try:
                await app.state.store.ensure_indexes()
            except BackendUnavailable as e:
                logger.warning("Could not ensure deal indexes: %s", e)
        yield

    app = FastAPI(title="Coursespeak API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DealNotFound, handle_not_found)
    app.add_exception_handler(DuplicateDeal, handle_duplicate)
    app.add_exception_handler(InvalidPayload, handle_invalid)
    app.add_exception_handler(Unauthorized, handle_unauthorized)
    app.add_exception_handler(StoreError, handle_store_error)

    app.include_router(router)
    app.include_router(admin)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
