"""
Main API module for Hashlink Platform.

Responsibilities:
    - Expose REST endpoints for shortening URLs (single, raw text, batch)
    - Redirect short ids to their original URL
    - List and soft-delete the URLs owned by the calling (anonymous) user
    - Report database reachability

Architecture:
    - App Factory pattern (create_app) for test isolation and DI.
    - Repositories are chosen once at startup by the storage factory
      (PostgreSQL when a DSN or connection is given, otherwise in-memory with
      an optional backup log) and closed on shutdown.
    - URLManager orchestrates validation, deadlines and per-user bookkeeping;
      routes only translate between HTTP and the manager.
    - Gzip-encoded request bodies are decoded before routing; responses are
      compressed by Starlette's GZipMiddleware when the client accepts it.

LLM Prompt Example:
    "Explain how to structure a FastAPI service with an application factory,
    a lifespan that owns storage resources, and a clean separation between
    API and business logic."
"""

import argparse
import logging
import zlib
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Sequence

import uvicorn
from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.datastructures import Headers
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from auth.dependencies import get_current_user, user_cookie_middleware
from auth.schemas import UserURL
from auth.service import TokenBuilder
from hashlink_platform.config import load_settings, settings
from hashlink_platform.manager.url_manager import URLManager
from hashlink_platform.storage.errors import (
    DeletedError,
    NotFoundError,
    RepositoryError,
    UnsupportedOperationError,
)
from hashlink_platform.storage.storage_factory import init_repositories

log = logging.getLogger("hashlink.api")

# upper bound on a gzip request body after decompression
MAX_DECODED_BODY = 1024 * 1024


class ShortenRequest(BaseModel):
    """Request payload for POST /api/shorten."""
    url: str


class ShortenResponse(BaseModel):
    result: str


class BatchItem(BaseModel):
    """One entry of the POST /api/shorten/batch payload."""
    correlation_id: str
    original_url: str


class BatchResultItem(BaseModel):
    correlation_id: str
    short_url: str


class GzipRequestMiddleware:
    """
    Decode request bodies sent with `Content-Encoding: gzip`.

    The whole body is buffered, decompressed, and handed to the app with the
    encoding header removed and Content-Length fixed up. A body that is not
    valid gzip gets a 400, and one that inflates past `max_body_size` bytes
    gets a 413, before any route runs.
    """

    def __init__(self, app, max_body_size: int = MAX_DECODED_BODY) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        if Headers(scope=scope).get("content-encoding", "").lower() != "gzip":
            await self.app(scope, receive, send)
            return

        chunks = []
        more_body = True
        while more_body:
            message = await receive()
            chunks.append(message.get("body", b""))
            more_body = message.get("more_body", False)

        decoder = zlib.decompressobj(wbits=31)
        try:
            body = decoder.decompress(b"".join(chunks), self.max_body_size + 1)
        except zlib.error:
            body = None
        if body is not None and len(body) > self.max_body_size:
            response = PlainTextResponse("decoded request body is too large", status_code=413)
            await response(scope, receive, send)
            return
        if body is None or not decoder.eof:
            response = PlainTextResponse("request body is not valid gzip", status_code=400)
            await response(scope, receive, send)
            return

        headers = [
            (name, value) for name, value in scope["headers"]
            if name not in (b"content-encoding", b"content-length")
        ]
        headers.append((b"content-length", str(len(body)).encode("latin-1")))
        scope = dict(scope, headers=headers)

        delivered = False

        async def receive_decoded():
            nonlocal delivered
            if delivered:
                return await receive()
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, receive_decoded, send)


def create_app(cfg: Optional[Any] = None, *, db_connection: Optional[Any] = None) -> FastAPI:
    """
    Factory function to build and configure a new FastAPI app instance.

    Args:
        cfg: Settings object (defaults to the module-level `settings`).
        db_connection: Already-open async database connection. When given it
            is used instead of DATABASE_DSN and is not closed on shutdown.

    Returns:
        FastAPI: A fully configured application. Repositories are created when
        the app starts (lifespan), so nothing is opened at import time.
    """
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repositories = await init_repositories(
            backup_path=cfg.FILE_STORAGE_PATH or None,
            dsn=cfg.DATABASE_DSN or None,
            conn=db_connection,
            delete_workers=cfg.DELETE_WORKERS,
            delete_batch_size=cfg.DELETE_BATCH_SIZE,
        )
        app.state.repositories = repositories
        app.state.manager = URLManager(
            urls=repositories.urls,
            users=repositories.users,
            tokens=TokenBuilder(cfg.SECRET_KEY),
            base_url=cfg.BASE_URL,
            timeout=cfg.REQUEST_TIMEOUT,
        )
        log.info("Hashlink storage backend: %s", repositories.backend)
        try:
            yield
        finally:
            await repositories.aclose()

    app = FastAPI(
        title="Hashlink Platform",
        description="Deterministic hash-based URL shortener with per-user link lists",
        docs_url="/docs",
        lifespan=lifespan,
    )

    # basic console logging (optional)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    # ----------------------------------------------------------------
    # Middleware (last added runs first)
    # ----------------------------------------------------------------
    app.middleware("http")(user_cookie_middleware)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(GzipRequestMiddleware)

    # ----------------------------------------------------------------
    # Error mapping
    # ----------------------------------------------------------------
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"detail": "Short URL not found"}, status_code=404)

    @app.exception_handler(DeletedError)
    async def deleted(request: Request, exc: DeletedError):
        return JSONResponse({"detail": "Short URL has been deleted"}, status_code=410)

    @app.exception_handler(UnsupportedOperationError)
    async def unsupported(request: Request, exc: UnsupportedOperationError):
        return JSONResponse({"detail": str(exc)}, status_code=501)

    @app.exception_handler(RepositoryError)
    async def repository_failure(request: Request, exc: RepositoryError):
        log.error("%s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse({"detail": "Internal Server Error"}, status_code=500)

    @app.exception_handler(RequestValidationError)
    async def bad_payload(request: Request, exc: RequestValidationError):
        return JSONResponse({"detail": jsonable_encoder(exc.errors())}, status_code=400)

    def _manager(request: Request) -> URLManager:
        return request.app.state.manager

    # ----------------------------------------------------------------
    # Routes
    # ----------------------------------------------------------------
    @app.get("/ping")
    async def ping(manager: URLManager = Depends(_manager)) -> Response:
        """200 when the database answers, 500 otherwise (including no database)."""
        await manager.ping()
        return Response(status_code=200)

    @app.post("/")
    async def shorten_raw(
        request: Request,
        manager: URLManager = Depends(_manager),
        user_token: str = Depends(get_current_user),
    ) -> Response:
        """
        Shorten the URL sent as the raw request body.

        Returns:
            201 with the short URL as text, or 409 with the existing short URL
            when the URL was already stored.
        """
        body = await request.body()
        if not body:
            raise HTTPException(status_code=400, detail="request body is empty")
        try:
            result = await manager.shorten(body.decode("utf-8"), user_token)
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve))
        return PlainTextResponse(result.short_url, status_code=409 if result.duplicate else 201)

    @app.post("/api/shorten", response_model=ShortenResponse)
    async def shorten_json(
        req: ShortenRequest,
        manager: URLManager = Depends(_manager),
        user_token: str = Depends(get_current_user),
    ) -> Response:
        try:
            result = await manager.shorten(req.url, user_token)
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve))
        payload = ShortenResponse(result=result.short_url).model_dump()
        return JSONResponse(payload, status_code=409 if result.duplicate else 201)

    @app.post("/api/shorten/batch", response_model=List[BatchResultItem])
    async def shorten_batch(
        items: List[BatchItem],
        manager: URLManager = Depends(_manager),
        user_token: str = Depends(get_current_user),
    ) -> Response:
        """
        Shorten a list of URLs; each result keeps its request's correlation_id.

        409 when at least one URL was already stored (all short URLs are
        still returned).
        """
        try:
            result = await manager.shorten_batch([item.original_url for item in items], user_token)
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve))
        payload = [
            BatchResultItem(correlation_id=item.correlation_id, short_url=short_url).model_dump()
            for item, short_url in zip(items, result.short_urls)
        ]
        return JSONResponse(payload, status_code=409 if result.duplicate else 201)

    @app.get("/api/user/urls", response_model=List[UserURL])
    async def user_urls(
        manager: URLManager = Depends(_manager),
        user_token: str = Depends(get_current_user),
    ) -> Response:
        items = await manager.user_urls(user_token)
        if not items:
            return Response(status_code=204)
        return JSONResponse([UserURL(**item).model_dump() for item in items], status_code=200)

    @app.delete("/api/user/urls", status_code=202)
    async def delete_user_urls(
        background_tasks: BackgroundTasks,
        ids: List[str] = Body(...),
        manager: URLManager = Depends(_manager),
        user_token: str = Depends(get_current_user),
    ) -> Response:
        """
        Accept a list of short ids for soft-deletion and return 202 at once.

        Only ids owned by the caller are deleted; the work runs after the
        response is sent.
        """
        if not manager.urls.supports_delete:
            raise UnsupportedOperationError("delete requires the database backend")
        background_tasks.add_task(_delete_in_background, manager, user_token, ids)
        return Response(status_code=202)

    @app.get("/{id}")
    async def redirect(id: str, manager: URLManager = Depends(_manager)) -> Response:
        """307 to the original URL; 404 for unknown ids, 410 for deleted ones."""
        original = await manager.resolve(id)
        return RedirectResponse(url=original, status_code=307)

    return app


async def _delete_in_background(manager: URLManager, user_token: str, ids: Sequence[str]) -> None:
    try:
        await manager.delete_user_urls(user_token, ids)
    except RepositoryError as exc:
        log.error("background delete of %d ids failed: %r", len(ids), exc)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Command-line entry point; flags override environment variables."""
    parser = argparse.ArgumentParser(description="Hashlink Platform URL shortener")
    parser.add_argument("-a", dest="server_address", help="host:port to listen on")
    parser.add_argument("-b", dest="base_url", help="prefix of returned short URLs")
    parser.add_argument("-f", dest="file_storage_path", help="backup log for the in-memory backend")
    parser.add_argument("-k", dest="secret_key", help="HMAC key for user tokens")
    parser.add_argument("-d", dest="database_dsn", help="PostgreSQL DSN")
    args = parser.parse_args(argv)

    cfg = load_settings()
    if args.server_address:
        cfg.SERVER_ADDRESS = args.server_address
    if args.base_url:
        cfg.BASE_URL = args.base_url
    if args.file_storage_path:
        cfg.FILE_STORAGE_PATH = args.file_storage_path
    if args.secret_key:
        cfg.SECRET_KEY = args.secret_key
    if args.database_dsn:
        cfg.DATABASE_DSN = args.database_dsn

    logging.basicConfig(level=logging.INFO)
    host, port = cfg.bind()
    uvicorn.run(create_app(cfg), host=host, port=port)


# `uvicorn main:app` and `from main import app` keep working.
app = create_app()


if __name__ == "__main__":
    main()
