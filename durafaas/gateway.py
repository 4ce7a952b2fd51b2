"""
HTTP gateway for starting and querying orchestrations.

Routes:
  POST /orchestrations/{name}                         start an instance
  GET  /orchestrations                                list instances
  GET  /orchestrations/{instanceId}                   instance status
  POST /orchestrations/{instanceId}/events/{event}    raise an external event
  POST /orchestrations/{instanceId}/terminate         terminate an instance
  GET  /health                                        liveness

Usage:
    durafaas serve --port 7071
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .contracts import ErrorDetails
from .errors import (
    InstanceConflict,
    InstanceNotFound,
    OrchestrationTimeout,
    OrchestratorNotFound,
)
from .persistence import OrchestrationInstance, OrchestrationStatus
from .scheduler import OrchestrationScheduler

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CheckStatusResponse(_CamelModel):
    id: str
    status_query_url: str
    send_event_url: str
    terminate_url: str


class ErrorResponse(_CamelModel):
    message: str


class StatusResponse(_CamelModel):
    instance_id: str
    name: str
    runtime_status: OrchestrationStatus
    input: Any = None
    output: Any = None
    error: Optional[ErrorDetails] = None
    created_time: datetime
    last_updated_time: datetime
    history: Optional[list[dict[str, Any]]] = None

    @classmethod
    def from_instance(
        cls, instance: OrchestrationInstance, show_history: bool = False
    ) -> "StatusResponse":
        return cls(
            instance_id=instance.instance_id,
            name=instance.name,
            runtime_status=instance.status,
            input=instance.input,
            output=instance.output,
            error=instance.error.model_copy(update={"stack_trace": None})
            if instance.error
            else None,
            created_time=instance.created_at,
            last_updated_time=instance.last_updated_at,
            history=[event.model_dump(mode="json") for event in instance.history]
            if show_history
            else None,
        )

    def to_dict(self) -> dict[str, Any]:
        # ``output`` stays in the document even when null.
        data = super().to_dict()
        data.setdefault("output", self.output)
        return data


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(message=message).to_dict())


def _check_status(request: Request, instance_id: str) -> CheckStatusResponse:
    base = str(request.base_url).rstrip("/")
    status_url = f"{base}/orchestrations/{quote(instance_id, safe='')}"
    return CheckStatusResponse(
        id=instance_id,
        status_query_url=status_url,
        send_event_url=f"{status_url}/events/{{eventName}}",
        terminate_url=f"{status_url}/terminate?reason={{reason}}",
    )


def create_app(scheduler: OrchestrationScheduler, manage_lifecycle: bool = True) -> FastAPI:
    """
    Create the FastAPI application around ``scheduler``.

    With ``manage_lifecycle`` the scheduler is started and stopped together
    with the application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await scheduler.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await scheduler.stop()

    app = FastAPI(
        title="durafaas",
        description="Durable orchestration gateway",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def internal_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error serving {request.method} {request.url.path}")
            return _error(500, f"Internal error: {type(e).__name__}: {e}")

    # ── Start ────────────────────────────────────────────────

    @app.post("/orchestrations/{orchestrator_name}")
    async def start_orchestration(
        orchestrator_name: str,
        request: Request,
        instance_id: Optional[str] = Query(default=None, alias="instanceId"),
        wait_for_completion: Optional[float] = Query(
            default=None, alias="waitForCompletion", gt=0
        ),
    ):
        raw = await request.body()
        try:
            client_input = json.loads(raw) if raw.strip() else None
        except json.JSONDecodeError as e:
            return _error(400, f"Request body is not valid JSON: {e}")

        try:
            instance_id = await scheduler.start_new(
                orchestrator_name, instance_id=instance_id, input=client_input
            )
        except InstanceConflict as e:
            logger.warning(str(e))
            return _error(409, str(e))
        except OrchestratorNotFound as e:
            return _error(404, str(e))

        logger.info(f"Started orchestration with ID = '{instance_id}'.")
        check_status = _check_status(request, instance_id)

        if wait_for_completion is not None:
            try:
                instance = await scheduler.wait_for_completion(
                    instance_id, timeout=wait_for_completion
                )
            except OrchestrationTimeout as e:
                logger.info(str(e))
            else:
                logger.info(
                    f"{orchestrator_name} completed, return= {json.dumps(instance.output)}"
                )
                return JSONResponse(content=StatusResponse.from_instance(instance).to_dict())

        return JSONResponse(
            status_code=202,
            content=check_status.to_dict(),
            headers={"Location": check_status.status_query_url},
        )

    # ── Status ───────────────────────────────────────────────

    @app.get("/orchestrations")
    async def list_orchestrations(
        runtime_status: Optional[OrchestrationStatus] = Query(
            default=None, alias="runtimeStatus"
        ),
    ):
        instances = await scheduler.list_instances(runtime_status)
        return JSONResponse(
            content=[StatusResponse.from_instance(i).to_dict() for i in instances]
        )

    @app.get("/orchestrations/{instance_id}")
    async def get_orchestration_status(
        instance_id: str,
        show_history: bool = Query(default=False, alias="showHistory"),
    ):
        try:
            instance = await scheduler.get_status(instance_id)
        except InstanceNotFound as e:
            return _error(404, str(e))
        return JSONResponse(
            content=StatusResponse.from_instance(instance, show_history).to_dict()
        )

    # ── Control ──────────────────────────────────────────────

    @app.post("/orchestrations/{instance_id}/events/{event_name}")
    async def raise_event(instance_id: str, event_name: str, request: Request):
        raw = await request.body()
        try:
            data = json.loads(raw) if raw.strip() else None
        except json.JSONDecodeError as e:
            return _error(400, f"Request body is not valid JSON: {e}")
        try:
            delivered = await scheduler.raise_event(instance_id, event_name, data)
        except InstanceNotFound as e:
            return _error(404, str(e))
        if not delivered:
            return _error(410, f"Instance '{instance_id}' is no longer running.")
        return JSONResponse(status_code=202, content={})

    @app.post("/orchestrations/{instance_id}/terminate")
    async def terminate(instance_id: str, reason: Optional[str] = None):
        try:
            terminated = await scheduler.terminate(instance_id, reason)
        except InstanceNotFound as e:
            return _error(404, str(e))
        if not terminated:
            return _error(410, f"Instance '{instance_id}' is no longer running.")
        return JSONResponse(status_code=202, content={})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
