from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import db
from .api_models import CommandResponse, RolloutRequest, ScaleRequest
from .controller import CommandResult, Controller
from .errors import UnknownService

_NOT_FOUND = {"UnknownService", "UnknownJob", "NoRollout"}


def _respond(result: CommandResult) -> JSONResponse:
    if result.outcome == "rejected":
        code = 404 if result.error in _NOT_FOUND else 409
    elif result.outcome in {"accepted", "started"}:
        code = 202
    else:
        # success, failed and rolled_back are all definitive answers; the body says which.
        code = 200
    return JSONResponse(status_code=code, content=CommandResponse(**result.to_dict()).model_dump())


def create_app(controller: Controller | None = None, run_background: bool = True) -> FastAPI:
    """Build the operator API.

    Without a controller, one is built from settings (YAML config, Docker)
    when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctl = controller or Controller.from_settings()
        app.state.controller = ctl
        if run_background:
            ctl.run_background()
        try:
            yield
        finally:
            if run_background:
                ctl.shutdown()

    app = FastAPI(title="Service Lifecycle Controller", lifespan=lifespan)

    def ctl(request: Request) -> Controller:
        return request.app.state.controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/services")
    def list_services(request: Request) -> list[dict[str, Any]]:
        return ctl(request).status()

    @app.get("/services/{name}")
    def get_service(name: str, request: Request) -> dict[str, Any]:
        try:
            return ctl(request).service_status(name)
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/start")
    def start(request: Request) -> JSONResponse:
        return _respond(ctl(request).start())

    @app.post("/services/{name}/scale")
    def scale(name: str, body: ScaleRequest, request: Request) -> JSONResponse:
        return _respond(ctl(request).scale(name, body.replicas))

    @app.post("/services/{name}/rollout")
    def rollout(name: str, body: RolloutRequest, request: Request) -> JSONResponse:
        return _respond(ctl(request).rollout(name, body.version, batch_size=body.batch_size, wait=body.wait))

    @app.post("/services/{name}/rollout/cancel")
    def cancel_rollout(name: str, request: Request) -> JSONResponse:
        return _respond(ctl(request).cancel_rollout(name))

    @app.post("/services/{name}/rollback")
    def rollback(name: str, request: Request) -> JSONResponse:
        return _respond(ctl(request).rollback(name))

    @app.get("/rollouts")
    def rollouts(request: Request) -> list[dict[str, Any]]:
        return ctl(request).rollout_history()

    @app.get("/backups")
    def backups(request: Request) -> list[dict[str, Any]]:
        return ctl(request).backup_status()

    @app.post("/backups/{name}/run")
    def backup_now(name: str, request: Request) -> JSONResponse:
        return _respond(ctl(request).backup_now(name))

    @app.get("/events")
    def events(limit: int = 100, service: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)), service_name=service)

    return app
