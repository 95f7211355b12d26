from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import PlainTextResponse, StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from rsr.api_models import EventOut, ServiceOut, ServiceStatusOut, SyncResponse
from rsr.config import ConfigStore
from rsr.errors import ConfigError, InspectionError
from rsr.events import latest_events, log_event
from rsr.reconciler import Reconciler
from rsr.settings import settings


security = HTTPBasic(auto_error=False)


def require_operator(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
    """Basic auth for mutating calls, enforced only when RSR_API_PASSWORD is set."""
    if not settings.api_password:
        return "anonymous"
    user = settings.api_user or "admin"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, user) and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def create_app(reconciler: Reconciler | None = None, start_loop: bool = True) -> FastAPI:
    rec = reconciler or Reconciler(ConfigStore(settings.config_path))
    app = FastAPI(title="Replica Sync Reconciler")
    app.state.reconciler = rec

    @app.on_event("startup")
    def startup() -> None:
        if not start_loop:
            return
        # Docker unreachable or an unreadable config file is fatal at startup.
        rec.preflight()
        rec.start()
        log_event("INFO", "All prerequisites met, reconciler running")

    @app.on_event("shutdown")
    def shutdown() -> None:
        if not start_loop:
            return
        log_event("INFO", "Received shutdown signal")
        rec.stop()
        # The in-flight service finishes before the loop exits.
        rec.join(timeout=120)

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "healthy", "cycles": rec.control.cycles}

    @app.get("/services", response_model=list[ServiceOut])
    def list_services() -> list[ServiceOut]:
        try:
            cfg = rec.current_config()
        except ConfigError as e:
            raise HTTPException(status_code=503, detail=str(e))
        out: list[ServiceOut] = []
        for name in cfg.order:
            entry = cfg.entry(name)
            if isinstance(entry, ConfigError):
                out.append(ServiceOut(name=name, enabled=False, valid=False, replica_name=rec.replica_name(name), error=str(entry)))
                continue
            out.append(
                ServiceOut(
                    name=name,
                    enabled=entry.enabled,
                    valid=True,
                    primary_pattern=entry.primary_pattern,
                    health_endpoint=entry.health_endpoint,
                    health_port=entry.health_port,
                    version_path=entry.version_path,
                    replica_name=rec.replica_name(name),
                )
            )
        return out

    @app.get("/services/{name}/status", response_model=ServiceStatusOut)
    def service_status(name: str) -> ServiceStatusOut:
        try:
            st = rec.status(name)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConfigError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return ServiceStatusOut.from_status(st)

    @app.post("/services/{name}/sync", response_model=SyncResponse)
    def force_sync(name: str, user: str = Depends(require_operator)) -> SyncResponse:
        try:
            removed = rec.force_sync(name)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConfigError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except InspectionError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        log_event("INFO", f"Force sync requested by {user}", service_name=name)
        if removed:
            msg = "Failover container removed; it will be recreated on the next check cycle."
        else:
            msg = "Failover container does not exist yet; it will be created on the next check cycle."
        return SyncResponse(service=name, removed=removed, message=msg)

    @app.get("/services/{name}/logs", response_class=PlainTextResponse)
    def service_logs(name: str, tail: int = Query(100, ge=1, le=10000), follow: bool = False):
        try:
            out = rec.logs(name, tail=tail, follow=follow)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (ConfigError, InspectionError) as e:
            raise HTTPException(status_code=503, detail=str(e))
        if follow:
            return StreamingResponse(out, media_type="text/plain")
        return PlainTextResponse(out.decode("utf-8", errors="replace"))

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000), service: Optional[str] = None) -> list[EventOut]:
        return [EventOut(**e) for e in latest_events(limit, service_name=service)]

    return app


app = create_app()
