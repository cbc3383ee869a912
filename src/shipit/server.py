"""
Worker-facing HTTP API.

- GET  /workerisstarted?arch=<arch>  -> {"Working": record} | {"Pending": null}
- POST /done                          -> 200, empty body

Both require the shared secret in the ``secret`` header.
"""
from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .control import BadSecret, ControlPlane
from .models import BuildReport, build_kind_from_name, encode_poll_result
from .registry import RegistryUnavailable
from .utils import utc_now_iso

SECRET_HEADER = APIKeyHeader(name="secret", auto_error=False)


class BuildTypeRequest(BaseModel):
    name: str
    variants: Optional[list[str]] = None


class DoneRequest(BaseModel):
    id: Union[str, int]
    arch: str = Field(min_length=1)
    build_type: BuildTypeRequest
    has_error: bool
    push_success: bool
    log_url: Optional[str] = None
    date: Optional[str] = None

    def to_report(self) -> BuildReport:
        return BuildReport(
            requester_id=str(self.id),
            architecture=self.arch,
            build_kind=build_kind_from_name(self.build_type.name, self.build_type.variants),
            success=not self.has_error,
            push_success=self.push_success,
            log_url=self.log_url,
            date=self.date or utc_now_iso(),
        )


def get_control(request: Request) -> ControlPlane:
    return request.app.state.control


def require_secret(
    secret: Optional[str] = Security(SECRET_HEADER),
    control: ControlPlane = Depends(get_control),
) -> str:
    # runs before request body validation
    control.authenticate(secret)
    return secret


def create_app(control: ControlPlane) -> FastAPI:
    app = FastAPI(title="shipit", docs_url=None, redoc_url=None)
    app.state.control = control

    @app.exception_handler(BadSecret)
    def bad_secret_handler(request: Request, exc: BadSecret) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(RegistryUnavailable)
    def registry_handler(request: Request, exc: RegistryUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"detail": f"Failed to access job registry: {exc}"},
        )

    @app.get("/workerisstarted")
    def worker_is_started(
        arch: str = Query(..., min_length=1),
        secret: str = Depends(require_secret),
        control: ControlPlane = Depends(get_control),
    ) -> dict[str, Any]:
        return encode_poll_result(control.poll_for_work(arch, secret))

    @app.post("/done")
    def build_done(
        body: DoneRequest,
        secret: str = Depends(require_secret),
        control: ControlPlane = Depends(get_control),
    ) -> Response:
        try:
            report = body.to_report()
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        control.report_done(report, secret)
        return Response(status_code=200)

    return app
