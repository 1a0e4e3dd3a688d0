"""
CONTENT RAIL - FastAPI Server

Licensing backend for machine-readable content.

Endpoints:
- GET  /health - Health check
- POST /api/content/register - Register content behind a price
- GET  /api/content/{content_hash} - Content details
- POST /api/content/{content_hash}/price - Owner price update
- POST /api/content/{content_hash}/toggle - Owner enable/disable
- POST /api/content/{content_hash}/access - Gated content access (402 if unpaid)
- POST /api/license/buy - Record a license after a confirmed transfer
- POST /api/license/batch - Record licenses for a batch transfer
- GET  /api/license/check - License lookup
- GET  /api/creator/{address}/stats - Creator revenue
- GET  /api/analytics/overview - Platform analytics
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import ServerSettings
from ..core.errors import (
    AuthorizationError,
    ContentInactive,
    ContentRailError,
    NotFoundError,
    ValidationError,
)
from ..core.ledger import parse_fingerprint
from ..core.licensing import LicensingEngine
from ..crypto.identity import AccessProof
from ..enforcement.gateway import AccessGateway, GateDecision, is_automated_agent

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class RegisterContentRequest(BaseModel):
    """Request to register content."""
    contentHash: str = Field(..., description="0x-prefixed 32-byte content hash")
    price: int = Field(..., description="Price in smallest token units (6 decimals)")
    contentURI: str = Field(..., description="Where licensed agents fetch the content")
    ownerAddress: str = Field(..., description="Address that receives payments")


class UpdatePriceRequest(BaseModel):
    newPrice: int
    callerAddress: str


class ToggleRequest(BaseModel):
    callerAddress: str


class AccessRequest(BaseModel):
    """Access request from a reader; agents add a signed proof."""
    agentAddress: Optional[str] = None
    signature: Optional[str] = None
    timestamp: Optional[int] = None


class BuyLicenseRequest(BaseModel):
    """Record a license after the transfer confirmed on the rail."""
    contentHash: str
    agentAddress: str
    txHash: str
    pricePaid: Optional[int] = None
    memo: Optional[str] = None


class BatchLicenseRequest(BaseModel):
    contentHashes: List[str] = Field(..., min_length=1)
    agentAddress: str
    txHash: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str
    contentCount: int
    contractAddress: Optional[str]


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Per-application state. Created in the lifespan handler."""

    def __init__(self, settings: ServerSettings, engine: Optional[LicensingEngine] = None):
        self.settings = settings
        self.engine = engine or LicensingEngine()
        self.gateway = AccessGateway(self.engine, settings=settings)
        self.start_time = self.engine.now()


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("content_rail_starting", version=VERSION)
    app.state.rail = AppState(app.state.settings, engine=app.state.engine)
    yield
    app.state.rail.engine.shutdown()
    logger.info("content_rail_stopping")


def create_app(
    engine: Optional[LicensingEngine] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or ServerSettings.from_env()

    application = FastAPI(
        title="Content Rail",
        description="""
# Content Licensing Rail

Content owners register content behind a price. Autonomous agents pay the
owner with an instant stablecoin transfer and receive a 30-day license.

Automated readers without a valid license get **402 Payment Required** with
payment instructions.
        """,
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.engine = engine

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "rail", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail={"error": "Invalid API key", "code": "INVALID_API_KEY"})
    return x_api_key


def http_error(error: ContentRailError) -> HTTPException:
    """Map a content rail error to its HTTP status."""
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, (AuthorizationError, ContentInactive)):
        status_code = 403
    elif isinstance(error, ValidationError):
        status_code = 400
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"error": error.message, "code": error.code})


def parse_hash(content_hash: str) -> bytes:
    try:
        return parse_fingerprint(content_hash)
    except ValidationError as e:
        raise http_error(e)


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=VERSION,
        timestamp=state.engine.now().isoformat(),
        contentCount=len(state.engine.store),
        contractAddress=state.settings.contract_address,
    )


@router.post("/api/content/register", status_code=201, tags=["Content"])
async def register_content(
    request: RegisterContentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Register new content for agent access."""
    try:
        entry = state.engine.register_content(
            request.contentHash,
            request.price,
            request.contentURI,
            request.ownerAddress,
        )
    except ContentRailError as e:
        logger.warning("register_content_rejected", content_hash=request.contentHash, code=e.code)
        raise http_error(e)
    return {"success": True, "content": entry.to_dict()}


@router.get("/api/content/{content_hash}", tags=["Content"])
async def get_content(content_hash: str, state: AppState = Depends(get_state)):
    """Content details."""
    try:
        return state.engine.get_content(parse_hash(content_hash)).to_dict()
    except ContentRailError as e:
        raise http_error(e)


@router.post("/api/content/{content_hash}/price", tags=["Content"])
async def update_price(
    content_hash: str,
    request: UpdatePriceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Owner-only price update."""
    try:
        entry = state.engine.update_price(parse_hash(content_hash), request.newPrice, request.callerAddress)
    except ContentRailError as e:
        raise http_error(e)
    return {"success": True, "content": entry.to_dict()}


@router.post("/api/content/{content_hash}/toggle", tags=["Content"])
async def toggle_content(
    content_hash: str,
    request: ToggleRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Owner-only enable/disable."""
    try:
        active = state.engine.toggle_active(parse_hash(content_hash), request.callerAddress)
    except ContentRailError as e:
        raise http_error(e)
    return {"success": True, "contentHash": content_hash, "active": active}


@router.post("/api/content/{content_hash}/access", tags=["Access"])
async def request_access(
    content_hash: str,
    request: AccessRequest,
    state: AppState = Depends(get_state),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """
    Request access to content.

    Regular readers are let through. Automated agents must present a
    signed proof and hold a valid license, otherwise they receive 402
    with payment instructions.
    """
    fingerprint = parse_hash(content_hash)
    proof = None
    if request.signature and request.timestamp is not None:
        proof = AccessProof(timestamp=request.timestamp, signature=request.signature)

    decision = state.gateway.decide(
        fingerprint,
        caller=request.agentAddress,
        proof=proof,
        automated=is_automated_agent(user_agent),
    )
    status_codes = {
        GateDecision.ALLOWED: 200,
        GateDecision.PAYMENT_REQUIRED: 402,
        GateDecision.FORBIDDEN: 403,
        GateDecision.NOT_FOUND: 404,
    }
    return JSONResponse(status_code=status_codes[decision.kind], content=decision.to_dict())


@router.post("/api/license/buy", tags=["Licenses"])
async def buy_license(
    request: BuyLicenseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Record a license purchase (called after the transfer confirmed)."""
    try:
        fingerprint = parse_hash(request.contentHash)
        price_paid = request.pricePaid
        if price_paid is None:
            price_paid = state.engine.get_content(fingerprint).price
        license = state.engine.record_license(request.agentAddress, fingerprint, price_paid, request.txHash)
    except ContentRailError as e:
        logger.warning("license_buy_rejected", content_hash=request.contentHash, code=e.code)
        raise http_error(e)
    return {"success": True, "license": license.to_dict()}


@router.post("/api/license/batch", tags=["Licenses"])
async def buy_license_batch(
    request: BatchLicenseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Record one license per content hash for a single batch transfer."""
    if not request.txHash:
        raise HTTPException(status_code=400, detail={"error": "txHash is required", "code": "MISSING_FIELD"})
    results = state.engine.record_licenses(request.agentAddress, request.contentHashes, request.txHash)
    return {
        "success": all(r["success"] for r in results),
        "licensesCreated": sum(1 for r in results if r["success"]),
        "results": results,
    }


@router.get("/api/license/check", tags=["Licenses"])
async def check_license(
    agent_address: str = Query(..., alias="agentAddress"),
    content_hash: str = Query(..., alias="contentHash"),
    state: AppState = Depends(get_state),
):
    """Whether an agent currently holds a valid license."""
    license = state.engine.get_license(agent_address, parse_hash(content_hash))
    return {
        "hasLicense": license is not None,
        "license": license.to_dict() if license else None,
    }


@router.get("/api/creator/{address}/stats", tags=["Analytics"])
async def creator_stats(address: str, state: AppState = Depends(get_state)):
    """Revenue and access totals for one content owner."""
    return state.engine.creator_stats(address)


@router.get("/api/analytics/overview", tags=["Analytics"])
async def analytics_overview(state: AppState = Depends(get_state)) -> Dict[str, Any]:
    """Platform analytics."""
    overview = state.engine.overview()
    overview["gateway"] = state.gateway.get_metrics()
    return overview


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run(settings: Optional[ServerSettings] = None):
    """Run the server."""
    import uvicorn
    settings = settings or ServerSettings.from_env()
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
