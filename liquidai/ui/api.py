"""FastAPI API for the dashboard.

Read endpoints expose the runner's in-process state (observations, strategy
and execution history, audit ring) plus ledger reads. The only write is the
manual cycle trigger, which goes through the same in-flight guard as a
scheduled cycle and needs an operator token when `UI_AUTH_ENABLED=true`.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from web3 import Web3

from liquidai.config import load_config, validate_config
from liquidai.data.mongo import MongoManager
from liquidai.ledger.client import TransportError
from liquidai.orchestrator.main_loop import OrchestratorRunner, build_runner
from liquidai.orchestrator.orchestrator import CycleOutcome
from liquidai.ui.auth import auth_enabled, bearer_token, check_credentials, issue_token, verify_token


def _parse_origins(value: str) -> List[str]:
    v = (value or "*").strip()
    if v == "*":
        return ["*"]
    return [p.strip() for p in v.split(",") if p.strip()]


def _json_safe(value: Any) -> Any:
    """Convert values to JSON-serializable types for API responses."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return _json_safe(value.model_dump(mode="json"))
    return str(value)


class TokenRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"


def create_app(runner: OrchestratorRunner, *, manage_runner: bool = False) -> FastAPI:
    app = FastAPI(title="LiquidAI Rebalancer API", version="0.1.0")
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_origins(os.getenv("UI_ALLOWED_ORIGINS", "*")),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if manage_runner:

        @app.on_event("startup")
        async def _startup() -> None:
            await runner.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await runner.stop()

    async def get_runner() -> OrchestratorRunner:
        return app.state.runner

    async def operator(authorization: Optional[str] = Header(None)) -> str:
        if not auth_enabled():
            return "anonymous"
        token = bearer_token(authorization)
        if not token:
            raise HTTPException(status_code=401, detail="missing_token")
        claims = verify_token(token)
        if claims is None:
            raise HTTPException(status_code=401, detail="invalid_token")
        return claims.sub

    @app.get("/health")
    async def health(r: OrchestratorRunner = Depends(get_runner)) -> Dict[str, Any]:
        return {"ok": True, "state": r.state.value, "ledger_mode": r.ledger_client.mode}

    @app.get("/api/status")
    async def status(r: OrchestratorRunner = Depends(get_runner)) -> Dict[str, Any]:
        return _json_safe(r.status())

    @app.get("/api/observations")
    async def observations(
        limit: int = Query(10, ge=1, le=500),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> List[Dict[str, Any]]:
        return _json_safe(r.observer.latest(limit))

    @app.get("/api/strategies")
    async def strategies(
        limit: int = Query(20, ge=1, le=500),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> List[Dict[str, Any]]:
        return _json_safe(r.history.strategies(limit))

    @app.get("/api/executions")
    async def executions(
        limit: int = Query(20, ge=1, le=500),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> List[Dict[str, Any]]:
        return _json_safe(r.history.executions(limit))

    @app.get("/api/cycles")
    async def cycles(
        limit: int = Query(20, ge=1, le=500),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> List[Dict[str, Any]]:
        return _json_safe(r.history.cycles(limit))

    @app.get("/api/proposals/pending")
    async def pending_proposals(r: OrchestratorRunner = Depends(get_runner)) -> List[Dict[str, Any]]:
        try:
            proposals = await r.ledger_client.pending_proposals()
        except TransportError as e:
            raise HTTPException(status_code=502, detail=f"ledger_unavailable: {e}") from e
        return _json_safe(proposals)

    @app.get("/api/pools/{address}/allocation")
    async def pool_allocation(address: str, r: OrchestratorRunner = Depends(get_runner)) -> Dict[str, Any]:
        if not Web3.is_address(address):
            raise HTTPException(status_code=400, detail="invalid_address")
        try:
            bps = await r.ledger_client.get_pool_allocation(address)
        except TransportError as e:
            raise HTTPException(status_code=502, detail=f"ledger_unavailable: {e}") from e
        return {"pool": address, "allocation_bps": int(bps)}

    @app.get("/api/audit")
    async def audit(
        limit: int = Query(50, ge=1, le=1000),
        event_type: Optional[str] = Query(None),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> List[Dict[str, Any]]:
        return _json_safe(r.audit.recent(limit, event_type=event_type))

    @app.post("/api/auth/token", response_model=TokenResponse)
    async def token(req: TokenRequest) -> TokenResponse:
        if not auth_enabled():
            raise HTTPException(status_code=404, detail="auth_disabled")
        if not check_credentials(username=req.username, password=req.password):
            raise HTTPException(status_code=401, detail="invalid_credentials")
        return TokenResponse(token=issue_token(operator=req.username))

    @app.post("/api/cycles/trigger")
    async def trigger_cycle(
        _operator: str = Depends(operator),
        r: OrchestratorRunner = Depends(get_runner),
    ) -> Dict[str, Any]:
        result = await r.trigger()
        if result.outcome == CycleOutcome.skipped_busy:
            raise HTTPException(status_code=409, detail="cycle_in_flight")
        return _json_safe(result.summary())

    return app


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn: wires a runner from environment config."""
    load_dotenv(override=False)
    cfg = load_config()
    validate_config(cfg)
    mongo = MongoManager(uri=cfg.mongodb_uri) if cfg.mongodb_uri else None
    return create_app(build_runner(cfg, mongo=mongo), manage_runner=True)


__all__ = ["create_app", "create_app_from_env"]
