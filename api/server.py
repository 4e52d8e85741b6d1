"""
HTTP API for the command execution engine.

Endpoints:
- GET  /health
- POST /v1/commands              -> ExecutionResult (JSON)
- POST /v1/commands/stream       -> StreamEvents (NDJSON)
- POST /v1/commands/sync         -> SyncChannelResponse
- POST /v1/undo                  -> {reverted, failed}
- POST /v1/prompt-cache/warm     -> {warmed}

Interactive calls carry identity in the X-Workspace-Id / X-User-Id headers;
the workspace store decides whether that identity is valid.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from main import Pipeline, build_pipeline
from shared.errors import Unauthorized
from shared.models import ConfirmationApproval, ExecutionOptions

logger = logging.getLogger(__name__)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CommandRequest(_Body):
    text: str = Field(min_length=1)
    session_id: str | None = None
    project_id: str | None = None
    tab_id: str | None = None
    undo_batch_id: str | None = None
    options: ExecutionOptions | None = None
    approvals: list[ConfirmationApproval] = Field(default_factory=list)


class SyncCommandRequest(_Body):
    text: str = Field(min_length=1)
    team_id: str
    user_id: str = Field(description="Chat-platform user id, linked to a workspace member")
    request_id: str | None = None
    project_id: str | None = None
    tab_id: str | None = None


class UndoRequest(_Body):
    workspace_id: str
    batches: list[str] = Field(default_factory=list)


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        owned = pipeline is None
        _app.state.pipeline = pipeline or build_pipeline()
        yield
        if owned:
            _app.state.pipeline.close()

    app = FastAPI(
        title="Command Execution Engine API",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(_request: Request, exc: Unauthorized) -> JSONResponse:
        logger.info("Rejected request: %s", exc)
        return JSONResponse(status_code=401, content={"error": exc.kind, "message": exc.user_message})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/commands")
    async def run_command(
        body: CommandRequest,
        request: Request,
        x_workspace_id: str = Header(default=""),
        x_user_id: str = Header(default=""),
    ) -> dict[str, Any]:
        interactive = request.app.state.pipeline.interactive
        command = interactive.build_command(
            body.text,
            x_workspace_id,
            x_user_id,
            session_id=body.session_id,
            project_id=body.project_id,
            tab_id=body.tab_id,
            undo_batch_id=body.undo_batch_id,
        )
        result = await interactive.execute(command, options=body.options, approvals=body.approvals, session_id=body.session_id)
        return result.to_wire()

    @app.post("/v1/commands/stream")
    async def stream_command(
        body: CommandRequest,
        request: Request,
        x_workspace_id: str = Header(default=""),
        x_user_id: str = Header(default=""),
    ) -> StreamingResponse:
        interactive = request.app.state.pipeline.interactive
        command = interactive.build_command(
            body.text,
            x_workspace_id,
            x_user_id,
            session_id=body.session_id,
            project_id=body.project_id,
            tab_id=body.tab_id,
            undo_batch_id=body.undo_batch_id,
        )
        frames = interactive.ndjson(command, options=body.options, approvals=body.approvals, session_id=body.session_id)
        return StreamingResponse(frames, media_type="application/x-ndjson")

    @app.post("/v1/commands/sync")
    async def sync_command(body: SyncCommandRequest, request: Request) -> dict[str, Any]:
        response = await request.app.state.pipeline.chat.handle(
            body.text,
            team_id=body.team_id,
            external_user_id=body.user_id,
            request_id=body.request_id,
            project_id=body.project_id,
            tab_id=body.tab_id,
        )
        return response.model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.post("/v1/undo")
    async def undo(
        body: UndoRequest,
        request: Request,
        x_user_id: str = Header(default=""),
    ) -> dict[str, Any]:
        pipeline = request.app.state.pipeline
        auth = pipeline.store.authorize(body.workspace_id, x_user_id)
        outcome = await pipeline.undo.undo(body.workspace_id, body.batches, auth)
        return outcome.to_wire()

    @app.post("/v1/prompt-cache/warm")
    async def warm_prompt_cache(request: Request) -> dict[str, int]:
        return await asyncio.to_thread(request.app.state.pipeline.prompt_cache.warm)

    return app


app = create_app()
