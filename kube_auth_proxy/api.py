from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Set

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from .auth import verify_api_key
from .broadcast import ConnectionUpdateBroadcaster
from .errors import KubeAuthProxyError, RetryExhausted
from .session import ProxySession

LOGGER = logging.getLogger("KubeAuthProxy.API")


def _session_payload(session: ProxySession) -> Dict[str, Any]:
    return {
        "cluster": session.cluster.name,
        "cluster_id": session.cluster.id,
        "context": session.cluster.context_name,
        "state": session.state,
        "ready": session.ready,
        "port": session.port if session.ready else None,
        "api_prefix": session.api_prefix,
        "retry_count": session.retry_count,
        "pid": session.pid,
    }


def create_app(
    session: ProxySession,
    broadcaster: ConnectionUpdateBroadcaster,
    *,
    api_keys: Optional[Set[str]] = None,
) -> FastAPI:
    app = FastAPI(title="Kube Auth Proxy", version="0.1.0")
    keys = set(api_keys or ())

    async def require_api_key(
        x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ) -> None:
        if not verify_api_key(keys, x_api_key):
            raise HTTPException(status_code=401, detail="Invalid or missing API key.")

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle glue
        session.exit()

    @app.get("/live")
    async def live() -> Dict[str, str]:
        return {"status": "alive"}

    def _ready_payload() -> JSONResponse:
        if session.ready:
            content = {
                "status": "ready",
                "port": session.port,
                "api_prefix": session.api_prefix,
            }
            return JSONResponse(status_code=200, content=content)

        state = session.state
        LOGGER.warning(
            "Proxy readiness failing for cluster '%s': state=%s",
            session.cluster.name,
            state,
        )
        return JSONResponse(status_code=503, content={"status": state})

    @app.get("/ready")
    async def ready() -> JSONResponse:
        return _ready_payload()

    @app.get("/health")
    async def health() -> JSONResponse:
        response = _ready_payload()
        response.headers["X-Deprecation-Notice"] = "Use /ready instead of /health."
        return response

    @app.get("/status")
    async def status(limit: int = Query(default=50, ge=0, le=500)) -> Dict[str, Any]:
        payload = _session_payload(session)
        payload["updates"] = [
            {"level": update.level, "message": update.message, "timestamp": update.timestamp}
            for update in broadcaster.recent(limit)
        ]
        return payload

    @app.post("/run", dependencies=[Depends(require_api_key)])
    async def run() -> JSONResponse:
        LOGGER.info("Start requested for cluster '%s'.", session.cluster.name)
        try:
            await session.run()
        except RetryExhausted as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except KubeAuthProxyError as exc:
            LOGGER.error("Proxy start for '%s' failed: %s", session.cluster.name, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(status_code=200, content=_session_payload(session))

    @app.post("/exit", dependencies=[Depends(require_api_key)])
    async def exit_proxy() -> Dict[str, Any]:
        LOGGER.info("Stop requested for cluster '%s'.", session.cluster.name)
        session.exit()
        return _session_payload(session)

    @app.post("/reset-retries", dependencies=[Depends(require_api_key)])
    async def reset_retries() -> Dict[str, Any]:
        session.reset_retry_count()
        return _session_payload(session)

    return app
