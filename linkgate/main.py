import asyncio
import logging
import time
import urllib.parse
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import Callable, Iterator
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from linkgate.config import Settings, get_settings
from linkgate.errors import AuthRequired, InvalidInput, LinkError
from linkgate.gate import DownloadTicket, RedemptionGate
from linkgate.logging_config import setup_logging
from linkgate.models import ConfigResponse, CreateLinkRequest, CreateLinkResponse, LinkListResponse, Owner
from linkgate.pages import render_status_page
from linkgate.registry import LinkRegistry
from linkgate.repository import LinkRepository
from linkgate.storage import FileBackend, LocalFileBackend
from linkgate.tokens import TokenMinter, generate_token

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "CDN-Cache-Control": "no-cache",
}


def _content_disposition(file_name: str) -> str:
    name = PurePosixPath(file_name.replace("\\", "/")).name or "download.bin"
    quoted = urllib.parse.quote(name, safe="")
    fallback = name.encode("latin-1", "ignore").decode("latin-1").replace('"', "")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


class DownloadResponse(StreamingResponse):
    """Streams a ticket's file and always hands the ticket back to the gate."""

    def __init__(self, gate: RedemptionGate, ticket: DownloadTicket, content: Iterator[bytes], **kwargs):
        super().__init__(content, **kwargs)
        self.gate = gate
        self.ticket = ticket

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # No-op when the stream already finished; releases the slot on disconnects.
            await run_in_threadpool(self.gate.finish, self.ticket, False)


def create_app(
    settings: Settings | None = None,
    *,
    clock: Callable[[], float] | None = None,
    authenticator: Callable[[Request], bool] | None = None,
    backend: FileBackend | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    clock = clock or time.time
    setup_logging(settings.log_level)

    repository = LinkRepository(settings.links_dir, lock_timeout=settings.lock_timeout_seconds)
    backend = backend or LocalFileBackend(settings.files_root)
    minter = TokenMinter(
        repository,
        generator=lambda: generate_token(settings.token_bytes),
        max_attempts=settings.mint_max_attempts,
    )
    registry = LinkRegistry(repository, minter, settings, clock=clock)
    gate = RedemptionGate(
        repository,
        backend,
        auth_enabled=settings.auth_enabled,
        clock=clock,
        max_markers=settings.wait_marker_limit,
        marker_ttl=settings.wait_marker_ttl_seconds,
    )

    if authenticator is None:

        def authenticator(request: Request) -> bool:
            return bool(request.session.get("user_id"))

    async def sweep_periodically() -> None:
        logger.info("sweep_task_started interval=%s", settings.sweep_interval_seconds)
        while True:
            await asyncio.sleep(settings.sweep_interval_seconds)
            try:
                await run_in_threadpool(registry.sweep_expired)
            except Exception:
                logger.exception("sweep_loop_error")

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        repository.init()
        sweep_task = None
        if settings.sweep_interval_seconds > 0:
            sweep_task = asyncio.create_task(sweep_periodically())
        yield
        if sweep_task is not None:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                logger.info("sweep_task_cancelled")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        session_cookie="linkgate_session",
        same_site="lax",
    )
    app.state.repository = repository
    app.state.registry = registry
    app.state.gate = gate

    @app.get("/")
    def root() -> dict:
        return {"status": "ok", "service": settings.app_name}

    def error_response(status_code: int, message: str, code: str, **extra) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message, **extra}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            403: "forbidden",
            404: "not_found",
            410: "expired",
        }
        return error_response(exc.status_code, message, code_map.get(exc.status_code, "error"))

    @app.exception_handler(LinkError)
    async def link_error_handler(request: Request, exc: LinkError):
        if exc.status_code >= 500:
            logger.error("request_failed path=%s code=%s err=%s", request.url.path, exc.code, exc.message)
        extra = {"login_url": settings.login_url} if isinstance(exc, AuthRequired) else {}
        response = error_response(exc.status_code, exc.message, exc.code, **extra)
        response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env}

    @app.get("/v1/config", response_model=ConfigResponse)
    def get_config():
        return registry.get_config()

    @app.post("/v1/links", response_model=CreateLinkResponse, status_code=201)
    def create_link(payload: CreateLinkRequest, request: Request):
        if not payload.owner_id.strip():
            raise HTTPException(status_code=400, detail="owner_id is required")

        owner = Owner(id=payload.owner_id, name=payload.owner_name or "Unknown")
        record = registry.create_link(owner, payload)

        params = urlencode({"t": record.token})
        download_url = str(request.base_url)[:-1] + f"/download?{params}"
        return CreateLinkResponse(token=record.token, download_url=download_url, expires_at=record.expires_at)

    @app.get("/v1/users/{owner_id}/links", response_model=LinkListResponse)
    def list_owner_links(owner_id: str):
        return LinkListResponse(links=registry.list_links(owner_id))

    @app.delete("/v1/users/{owner_id}/links/{token}")
    def delete_owner_link(owner_id: str, token: str) -> dict:
        registry.delete_link(owner_id, token)
        return {"success": True}

    @app.get("/download")
    def redeem(request: Request, t: str = Query(""), action: str = Query("view")):
        if not t:
            raise InvalidInput("invalid download link")
        authenticated = settings.auth_enabled and authenticator(request)

        if action == "view":
            status = gate.view(t, request.session, authenticated)
            page = render_status_page(status, timezone_name=settings.display_timezone, now=clock())
            return HTMLResponse(page, headers=NO_CACHE_HEADERS)

        if action != "download":
            raise InvalidInput(f"unknown action: {action}")

        ticket = gate.authorize(t, request.session, authenticated)
        logger.info(
            "download_started token=%s file=%s caller=%s",
            ticket.token,
            ticket.record.file_name,
            "authenticated" if authenticated else "anonymous",
        )

        def stream() -> Iterator[bytes]:
            completed = False
            try:
                yield from backend.iter_chunks(ticket.record, settings.download_chunk_size)
                completed = True
            finally:
                gate.finish(ticket, completed)

        headers = {
            **NO_CACHE_HEADERS,
            "Content-Disposition": _content_disposition(ticket.record.file_name),
            "Content-Length": str(ticket.size),
        }
        return DownloadResponse(gate, ticket, stream(), media_type="application/octet-stream", headers=headers)

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("linkgate.main:app", host=settings.host, port=settings.port)
