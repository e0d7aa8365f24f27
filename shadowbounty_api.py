#!/usr/bin/env python3
"""
ShadowBounty API
=================
FastAPI service in front of the coordination core: organization
registry, legacy submission log, content upload, bounties, claims,
review, settlement statements and reconciliation tooling.

The caller's wallet identity travels in the X-Wallet-Address header and
is handed to the core explicitly. Route handlers are plain functions, so
each request runs on the worker thread pool and a slow content store or
custody relayer never stalls unrelated requests.

Usage:
    uvicorn shadowbounty_api:app --host 0.0.0.0 --port 8081

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, field_validator
import uvicorn

from shadowbounty_backend import SQLiteBackend
from shadowbounty_content import (
    FileSystemContentStore,
    PGPEncryptionGateway,
    PinataContentStore,
)
from shadowbounty_core import Marketplace, build_marketplace
from shadowbounty_custody import HttpCustody, InMemoryCustody
from shadowbounty_docs import generate_settlement_statement
from shadowbounty_types import (
    BOUNTY_TRANSITIONS,
    CLAIM_TRANSITIONS,
    DEFAULT_REWARD_TOKENS,
    Bounty,
    BountyStatus,
    CloseReason,
    InvalidInput,
    MarketplaceError,
    RewardToken,
    find_token,
    format_units,
    parse_units,
)

# ── Logging ──
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("sb-api")


# ============================================================================
# CONFIGURATION
# ============================================================================

def _load_tokens(raw: str) -> List[RewardToken]:
    """SB_REWARD_TOKENS: JSON list of {symbol, address, decimals}."""
    if not raw.strip():
        return list(DEFAULT_REWARD_TOKENS)
    try:
        entries = json.loads(raw)
        return [
            RewardToken(e["symbol"], e["address"].lower(), int(e["decimals"]))
            for e in entries
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid SB_REWARD_TOKENS: {e}")


class Config:
    """Environment-driven configuration. Read when instantiated."""

    def __init__(self):
        self.DB_PATH: str = os.environ.get("SB_DB_PATH", "shadowbounty.db")
        self.API_KEY: str = os.environ.get("SB_API_KEY", "sb_live_sk_placeholder")
        self.REQUIRE_AUTH: bool = os.environ.get("REQUIRE_AUTH", "false").lower() == "true"
        self.CORS_ORIGINS: List[str] = os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        self.PINATA_JWT: str = os.environ.get("PINATA_JWT", "")
        self.PINATA_ENDPOINT: str = os.environ.get("PINATA_ENDPOINT", "https://api.pinata.cloud")
        self.PINATA_GATEWAY: str = os.environ.get("PINATA_GATEWAY", "https://gateway.pinata.cloud")
        self.CONTENT_DIR: str = os.environ.get("SB_CONTENT_DIR", "./content")
        self.CUSTODY_URL: str = os.environ.get("CUSTODY_URL", "")
        self.CUSTODY_TOKEN: str = os.environ.get("CUSTODY_TOKEN", "")
        self.RETRY_ATTEMPTS: int = int(os.environ.get("SB_RETRY_ATTEMPTS", "3"))
        self.RETRY_BASE_DELAY: float = float(os.environ.get("SB_RETRY_BASE_DELAY", "0.5"))
        self.ALLOW_BOUNTY_CANCELLATION: bool = (
            os.environ.get("ALLOW_BOUNTY_CANCELLATION", "false").lower() == "true"
        )
        self.REWARD_TOKENS: List[RewardToken] = _load_tokens(os.environ.get("SB_REWARD_TOKENS", ""))


def build_services(cfg: Config) -> Marketplace:
    """Wire backends and collaborators from configuration."""
    backend = SQLiteBackend(cfg.DB_PATH)

    if cfg.PINATA_JWT:
        content_store = PinataContentStore(
            cfg.PINATA_JWT, endpoint=cfg.PINATA_ENDPOINT, gateway=cfg.PINATA_GATEWAY,
        )
        logger.info(f"Content store: Pinata ({cfg.PINATA_ENDPOINT})")
    else:
        content_store = FileSystemContentStore(cfg.CONTENT_DIR)
        logger.info(f"Content store: local directory {cfg.CONTENT_DIR} (PINATA_JWT not set)")

    if cfg.CUSTODY_URL:
        custody = HttpCustody(cfg.CUSTODY_URL, token=cfg.CUSTODY_TOKEN)
        logger.info(f"Custody: relayer at {cfg.CUSTODY_URL}")
    else:
        custody = InMemoryCustody()
        logger.warning("Custody: in-memory escrow (CUSTODY_URL not set), funds are simulated")

    return build_marketplace(
        backend,
        content_store,
        custody,
        PGPEncryptionGateway(),
        allow_cancellation=cfg.ALLOW_BOUNTY_CANCELLATION,
        retry_attempts=cfg.RETRY_ATTEMPTS,
        retry_base_delay=cfg.RETRY_BASE_DELAY,
    )


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class RegisterOrgRequest(BaseModel):
    walletAddress: str = ""
    orgName: str = ""
    pgpKey: str = ""


class LegacySubmitRequest(BaseModel):
    cid: str = ""


class UploadRequest(BaseModel):
    content: str = ""
    filename: Optional[str] = Field(None, max_length=200)


class CreateBountyRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    reward_token: str = Field(..., min_length=1, description="Token symbol or address")
    reward_amount: str = Field(..., description="Human decimal amount, e.g. '250.5'")

    @field_validator("reward_amount", mode="before")
    @classmethod
    def amount_as_text(cls, v: Any) -> str:
        # Floats would already have lost precision.
        if isinstance(v, float):
            raise ValueError("reward_amount must be a string or integer, not a float")
        return str(v)


class SubmitClaimRequest(BaseModel):
    teaser: str = ""
    full_message: str = ""
    recipient_public_key: Optional[str] = None


class HealthResponse(BaseModel):
    service: str = "shadowbounty"
    status: str = "healthy"
    uptime_seconds: float = 0.0
    open_bounties: int = 0


# ============================================================================
# AUTH
# ============================================================================

def verify_api_key(cfg: Config, authorization: Optional[str]) -> str:
    """Verify the Bearer token against SB_API_KEY.
    Skipped in local dev; set REQUIRE_AUTH=true in production.
    """
    if not cfg.REQUIRE_AUTH:
        return "local_dev"

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Missing Authorization header"},
        )
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid Authorization format"},
        )
    if not hmac.compare_digest(parts[1], cfg.API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid API key"},
        )
    return parts[1]


# ============================================================================
# HELPERS
# ============================================================================

_build_lock = threading.Lock()


def _services(request: Request) -> Marketplace:
    state = request.app.state
    if state.services is None:
        with _build_lock:
            if state.services is None:
                state.services = build_services(state.config)
    return state.services


def _guard(request: Request, authorization: Optional[str]) -> Marketplace:
    verify_api_key(request.app.state.config, authorization)
    return _services(request)


def _bounty_view(bounty: Bounty, tokens: List[RewardToken]) -> Dict[str, Any]:
    data = bounty.to_dict()
    data["reward_amount"] = str(bounty.reward_amount)
    token = find_token(tokens, bounty.reward_token)
    if token:
        data["reward_symbol"] = token.symbol
        data["reward_display"] = f"{format_units(bounty.reward_amount, token.decimals)} {token.symbol}"
    return data


def _parse_status(raw: Optional[str]) -> Optional[BountyStatus]:
    if not raw:
        return None
    try:
        return BountyStatus(raw.lower())
    except ValueError:
        raise InvalidInput(f"Unknown bounty status: {raw}")


# ============================================================================
# ROUTES — health
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(request: Request):
    """Service health check."""
    services = _services(request)
    uptime = (datetime.utcnow() - services.backend.start_time).total_seconds()
    return HealthResponse(
        uptime_seconds=round(uptime, 1),
        open_bounties=len(services.ledger.list_bounties(status=BountyStatus.OPEN)),
    )


@router.get("/ready")
def ready():
    """Readiness probe."""
    return {"ready": True}


# ============================================================================
# ROUTES — organization registry & legacy submissions
# ============================================================================

@router.post("/api/register-org")
def register_org(req: RegisterOrgRequest, request: Request):
    """Register (or re-register) an organization's PGP public key."""
    org = _services(request).directory.register(req.walletAddress, req.orgName, req.pgpKey)
    return {
        "success": True,
        "message": "Organization registered successfully",
        "walletAddress": org.wallet_address,
    }


@router.get("/api/get-orgs")
def get_orgs(request: Request):
    orgs = _services(request).directory.list_organizations()
    return {"organizations": [o.to_dict() for o in orgs]}


@router.post("/api/submit")
def submit_legacy(req: LegacySubmitRequest, request: Request):
    """Append a content id to the free-form submissions log."""
    _services(request).submissions.append(req.cid)
    return {"success": True, "message": "Submission saved successfully"}


@router.get("/api/submissions")
def list_legacy_submissions(request: Request):
    return {"submissions": _services(request).submissions.list_submissions()}


@router.post("/api/upload-to-ipfs")
def upload_to_ipfs(req: UploadRequest, request: Request):
    """
    Store already-encrypted content. When the store stays unavailable after
    retries the response carries a placeholder id and `degraded: true`.
    """
    if not req.content:
        raise InvalidInput("Content is required")
    return _services(request).pipeline.upload(
        req.content.encode("utf-8"), req.filename or "encrypted-data.txt",
    )


# ============================================================================
# ROUTES — bounties
# ============================================================================

@router.get("/v1/tokens")
def list_tokens(request: Request):
    tokens = request.app.state.config.REWARD_TOKENS
    return {"tokens": [
        {"symbol": t.symbol, "address": t.address, "decimals": t.decimals}
        for t in tokens
    ]}


@router.get("/v1/transitions")
def list_transitions():
    """Legal status moves for bounties and claims."""
    return {
        "bounty": {k: sorted(v) for k, v in BOUNTY_TRANSITIONS.items()},
        "claim": {k: sorted(v) for k, v in CLAIM_TRANSITIONS.items()},
    }


@router.post("/v1/bounties", status_code=status.HTTP_201_CREATED)
def create_bounty(
    req: CreateBountyRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    """
    Lock the reward in escrow and open a bounty. The amount is given in
    display units and converted with the token's decimals.
    """
    services = _guard(request, authorization)
    tokens = request.app.state.config.REWARD_TOKENS
    token = find_token(tokens, req.reward_token)
    if token is None:
        raise InvalidInput(f"Unsupported reward token: {req.reward_token}")
    units = parse_units(req.reward_amount, token.decimals)

    bounty_id = services.ledger.create(x_wallet_address, req.title, token.address, units)
    return _bounty_view(services.ledger.get(bounty_id), tokens)


@router.get("/v1/bounties")
def list_bounties(
    request: Request,
    creator: Optional[str] = None,
    status: Optional[str] = None,
    authorization: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    tokens = request.app.state.config.REWARD_TOKENS
    bounties = services.ledger.list_bounties(creator=creator, status=_parse_status(status))
    return {
        "bounties": [_bounty_view(b, tokens) for b in bounties],
        "total": len(bounties),
    }


@router.get("/v1/bounties/{bounty_id}")
def get_bounty(bounty_id: int, request: Request, authorization: Optional[str] = Header(None)):
    services = _guard(request, authorization)
    return _bounty_view(services.ledger.get(bounty_id), request.app.state.config.REWARD_TOKENS)


@router.post("/v1/bounties/{bounty_id}/cancel")
def cancel_bounty(
    bounty_id: int,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    """Creator refund of an unclaimed bounty (ALLOW_BOUNTY_CANCELLATION)."""
    services = _guard(request, authorization)
    bounty = services.ledger.cancel(bounty_id, x_wallet_address)
    return _bounty_view(bounty, request.app.state.config.REWARD_TOKENS)


@router.get("/v1/bounties/{bounty_id}/statement")
def bounty_statement(bounty_id: int, request: Request, authorization: Optional[str] = Header(None)):
    """
    PDF settlement statement for a closed bounty.
    Returns: application/pdf
    """
    services = _guard(request, authorization)
    bounty = services.ledger.get(bounty_id)
    claim = None
    if bounty.close_reason == CloseReason.AWARDED and bounty.winning_claim_id:
        claim = services.registry.get(bounty.winning_claim_id)
    token = find_token(request.app.state.config.REWARD_TOKENS, bounty.reward_token)
    pdf_bytes = generate_settlement_statement(bounty, claim, token)

    filename = f"shadowbounty-statement-{bounty_id}.pdf"
    services.backend.audit("statement.generated", {
        "bounty_id": bounty_id,
        "close_reason": bounty.close_reason.value if bounty.close_reason else None,
    }, actor="operator")
    logger.info(f"Generated settlement statement for bounty #{bounty_id}")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================================================
# ROUTES — claims & review
# ============================================================================

@router.post("/v1/bounties/{bounty_id}/claims", status_code=status.HTTP_201_CREATED)
def submit_claim(
    bounty_id: int,
    req: SubmitClaimRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    """
    Encrypt the full message to the bounty creator's registered key (or
    the key supplied in the request), store it and register the claim.
    Without any key the evidence is stored base64-encoded and the claim
    is marked confidential=false.
    """
    services = _guard(request, authorization)
    key = req.recipient_public_key
    if not key:
        # Unknown bounties are rejected by the pipeline as invalid input.
        bounty = services.backend.get_bounty(bounty_id)
        if bounty is not None:
            key = services.directory.public_key_for(bounty.creator)

    claim_id = services.pipeline.submit_claim(
        bounty_id, x_wallet_address, req.teaser, req.full_message, key,
    )
    return services.registry.get(claim_id).to_dict()


@router.get("/v1/bounties/{bounty_id}/claims")
def list_bounty_claims(bounty_id: int, request: Request, authorization: Optional[str] = Header(None)):
    services = _guard(request, authorization)
    services.ledger.get(bounty_id)
    claims = services.registry.list_by_bounty(bounty_id)
    return {"claims": [c.to_dict() for c in claims], "total": len(claims)}


@router.get("/v1/claims")
def list_claims_by_submitter(
    submitter: str,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    claims = services.registry.list_by_submitter(submitter)
    return {"claims": [c.to_dict() for c in claims], "total": len(claims)}


@router.get("/v1/claims/{claim_id}")
def get_claim(claim_id: int, request: Request, authorization: Optional[str] = Header(None)):
    services = _guard(request, authorization)
    return services.registry.get(claim_id).to_dict()


@router.get("/v1/claims/{claim_id}/evidence")
def claim_evidence(
    claim_id: int,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    """
    Download the stored evidence blob (bounty creator only). PGP blobs are
    decrypted client-side; X-Claim-Confidential: false marks the base64
    fallback, which anyone holding the blob can read.
    """
    services = _guard(request, authorization)
    claim, blob = services.review.fetch_evidence(claim_id, x_wallet_address)
    ext = "asc" if claim.confidential else "txt"
    return Response(
        content=blob,
        media_type="application/pgp-encrypted" if claim.confidential else "text/plain",
        headers={
            "Content-Disposition": f'attachment; filename="claim-{claim_id}-evidence.{ext}"',
            "X-Content-Id": claim.content_id,
            "X-Claim-Encryption": claim.encryption.value,
            "X-Claim-Confidential": "true" if claim.confidential else "false",
        },
    )


@router.post("/v1/claims/{claim_id}/approve")
def approve_claim(
    claim_id: int,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    """Approve, release the escrow to the submitter and close the bounty."""
    services = _guard(request, authorization)
    claim = services.review.approve_claim(claim_id, x_wallet_address)
    bounty = services.ledger.get(claim.bounty_id)
    return {
        "claim": claim.to_dict(),
        "bounty": _bounty_view(bounty, request.app.state.config.REWARD_TOKENS),
    }


@router.post("/v1/claims/{claim_id}/reject")
def reject_claim(
    claim_id: int,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    return services.review.reject_claim(claim_id, x_wallet_address).to_dict()


@router.get("/v1/organizations/{wallet_address}")
def get_organization(wallet_address: str, request: Request, authorization: Optional[str] = Header(None)):
    services = _guard(request, authorization)
    return services.directory.get(wallet_address).to_dict()


# ============================================================================
# ROUTES — events, audit, reconciliation
# ============================================================================

@router.get("/v1/events")
def list_events(
    request: Request,
    topic: Optional[str] = None,
    limit: int = 50,
    authorization: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    return {"events": services.backend.list_events(topic=topic, limit=min(limit, 500))}


@router.get("/v1/audit-log")
def audit_log(
    request: Request,
    action: Optional[str] = None,
    limit: int = 100,
    authorization: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    return {"entries": services.backend.get_audit_log(action=action, limit=min(limit, 500))}


@router.get("/v1/reconciliation")
def list_inconsistencies(request: Request, authorization: Optional[str] = Header(None)):
    """Open bounties holding an approved claim: awards that did not finish."""
    services = _guard(request, authorization)
    found = services.review.find_inconsistencies()
    return {"inconsistencies": found, "total": len(found)}


@router.post("/v1/reconciliation/{bounty_id}")
def reconcile_bounty(
    bounty_id: int,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
):
    services = _guard(request, authorization)
    bounty = services.review.reconcile(bounty_id, operator=x_wallet_address or "operator")
    return _bounty_view(bounty, request.app.state.config.REWARD_TOKENS)


# ============================================================================
# FASTAPI APP
# ============================================================================

async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_detail()})


def create_app(services: Optional[Marketplace] = None, cfg: Optional[Config] = None) -> FastAPI:
    """
    Build the app. Services are wired from configuration on first use
    unless passed in.
    """
    cfg = cfg or Config()
    app = FastAPI(
        title="ShadowBounty",
        description="Escrowed intelligence bounties with encrypted claim evidence",
        version="1.0.0",
    )
    app.state.config = cfg
    app.state.services = services

    # In production, set CORS_ORIGINS to the front-end origin(s)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS if cfg.CORS_ORIGINS != ["*"] else ["*"],
        allow_credentials=cfg.CORS_ORIGINS != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    uvicorn.run(
        "shadowbounty_api:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8081")),
    )


if __name__ == "__main__":
    main()
