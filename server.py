#!/usr/bin/env python3
"""
Micropub server — IndieAuth-style token endpoint plus Micropub endpoints.

Routes:
  GET  /auth             — issue (or reuse) an authorization code, 302 back
  POST /token            — exchange the code for a bearer token
  GET  /micropub         — ?q=content|config|syndicate-to (bearer)
  POST /micropub         — create an h=entry post (bearer)
  POST /micropub/media   — media upload (bearer)

Authorization records are kept one-file-per-client under
<storage_root>/authorizations/. What happens to accepted posts and media
is up to the handlers passed to create_app().
"""

import argparse
import inspect
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import yaml
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from micropub_errors import AuthenticationFailed, InvalidRequest, MicropubError, UnsupportedHProperty
from micropub_models import (
    MicropubEntry,
    ResponseEncoding,
    flatten_mf2,
    fold_form_items,
    parse_auth_request,
)
from micropub_oauth import (
    ACCESS_TOKEN_PARAM,
    Credential,
    CredentialSource,
    MicropubAuthProvider,
    _audit,
    credential_from_header,
)
from micropub_store import AuthorizationStore

logger = logging.getLogger("micropub")

MICROPUB_PATH = "micropub"
MEDIA_PATH = "media"

NewPostHandler = Callable[[MicropubEntry], Optional[Awaitable[None]]]
ContentReceivedHandler = Callable[[Optional[UploadFile]], Union[str, None, Awaitable[Optional[str]]]]

# ---------------------------------------------------------------------------
# Configuration — micropub.yaml + env vars
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path(__file__).parent / "micropub.yaml"


@dataclass
class MicropubConfig:
    storage_root: Path
    base_url: str
    host: str = "127.0.0.1"
    port: int = 8080

    @property
    def media_endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/{MICROPUB_PATH}/{MEDIA_PATH}"


def load_config(config_path: Path | None = None) -> MicropubConfig:
    """Load settings from micropub.yaml, then apply env var overrides."""
    if config_path is None:
        config_path = Path(os.environ.get("MICROPUB_CONFIG", DEFAULT_CONFIG_PATH))

    raw: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if not isinstance(loaded, dict) or not isinstance(loaded.get("micropub"), dict):
            raise SystemExit(f"Invalid config: expected top-level 'micropub' mapping in {config_path}")
        raw = loaded["micropub"]
    else:
        logger.info("config: %s not found, using defaults", config_path)

    storage_root = os.environ.get("MICROPUB_STORAGE_ROOT") or raw.get("storage_root") or Path.cwd()
    base_url = os.environ.get("MICROPUB_BASE_URL") or raw.get("base_url") or "http://localhost:8080"
    try:
        port = int(raw.get("port", 8080))
    except (TypeError, ValueError):
        raise SystemExit(f"Invalid port {raw.get('port')!r} in {config_path}")

    return MicropubConfig(
        storage_root=Path(storage_root).expanduser(),
        base_url=str(base_url),
        host=str(raw.get("host", "127.0.0.1")),
        port=port,
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _is_json(request: Request) -> bool:
    return "json" in request.headers.get("content-type", "").lower()


async def _read_fields(request: Request) -> dict[str, Any]:
    """Body as a flat dict, from JSON or form data."""
    if _is_json(request):
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequest("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise InvalidRequest("JSON body must be an object")
        return data
    form = await request.form()
    return fold_form_items(list(form.multi_items()))


async def extract_credential(request: Request) -> Credential | None:
    """Find the bearer token: Authorization header first, else the body.

    When the header is present the body is never consulted.
    """
    header = request.headers.get("authorization")
    if header is not None:
        return credential_from_header(header)

    try:
        if _is_json(request):
            data = await request.json()
            token = data.get(ACCESS_TOKEN_PARAM) if isinstance(data, dict) else None
        else:
            form = await request.form()
            token = form.get(ACCESS_TOKEN_PARAM)
    except (ValueError, HTTPException) as e:
        logger.info("extract_credential: unreadable body: %s", e)
        return None

    if isinstance(token, str) and token:
        return Credential(CredentialSource.BODY_FIELD, token)
    return None


async def _require_bearer(request: Request) -> None:
    provider: MicropubAuthProvider = request.app.state.provider
    credential = await extract_credential(request)
    token = credential.token if credential else None
    if not await run_in_threadpool(provider.authenticate, token):
        _audit("bearer_rejected", path=request.url.path,
               source=credential.source.value if credential else None)
        raise AuthenticationFailed()


async def _call_handler(handler: Callable, arg: Any) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(arg)
    return await run_in_threadpool(handler, arg)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

async def auth_endpoint(request: Request) -> Response:
    auth = parse_auth_request(dict(request.query_params))
    if not auth.redirect_uri:
        raise InvalidRequest("redirect_uri is required")

    provider: MicropubAuthProvider = request.app.state.provider
    redirect = await run_in_threadpool(
        provider.authorize,
        auth.client_id, auth.redirect_uri, auth.state, auth.scope, auth.me,
    )
    if redirect is None:
        return Response()
    return RedirectResponse(redirect, status_code=302)


async def token_endpoint(request: Request) -> Response:
    auth = parse_auth_request(await _read_fields(request))
    if not auth.me:
        raise InvalidRequest("me is required")

    provider: MicropubAuthProvider = request.app.state.provider
    output = await run_in_threadpool(
        provider.exchange_token, auth.client_id, auth.code, auth.me, auth.scope,
    )
    encoding = ResponseEncoding.for_content_type(request.headers.get("content-type"))
    body, media_type = output.encode(encoding)
    return Response(body, media_type=media_type, headers={"Cache-Control": "no-store"})


async def micropub_query(request: Request) -> Response:
    await _require_bearer(request)

    q = request.query_params.get("q")
    config: MicropubConfig = request.app.state.config
    if q in ("content", "config"):
        return JSONResponse({"media-endpoint": config.media_endpoint})
    if q == "syndicate-to":
        return JSONResponse({"syndicate-to": []})
    return Response()


async def micropub_create(request: Request) -> Response:
    await _require_bearer(request)

    fields = await _read_fields(request)
    if _is_json(request):
        fields = flatten_mf2(fields)
    entry = MicropubEntry.from_fields(fields)
    if entry.h != "entry":
        raise UnsupportedHProperty(entry.h)

    await _call_handler(request.app.state.new_post_handler, entry)
    logger.info("micropub: accepted entry name=%r", entry.name)
    return Response()


async def media_upload(request: Request) -> Response:
    await _require_bearer(request)

    form = await request.form()
    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        upload = None

    location = await _call_handler(request.app.state.content_received_handler, upload)
    if location:
        logger.info("media: stored %s at %s", upload.filename if upload else None, location)
        return JSONResponse({"Location": location}, status_code=201,
                            headers={"Location": location})
    return Response()


# ---------------------------------------------------------------------------
# Errors, middleware, app factory
# ---------------------------------------------------------------------------

async def _on_micropub_error(request: Request, exc: MicropubError) -> Response:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationFailed) else None
    logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.error)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


class _MicropubMiddleware:
    """Log every HTTP request with a truncated Authorization header."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.inner(scope, receive, send)
            return

        hdrs = dict(scope.get("headers", []))
        auth = hdrs.get(b"authorization", b"").decode(errors="replace")
        logger.info("recv: %s %s auth=%s", scope.get("method", "?"), scope.get("path", "?"),
                    auth[:20] + "..." if len(auth) > 20 else (auth or "none"))
        await self.inner(scope, receive, send)


def _log_new_post(entry: MicropubEntry) -> None:
    logger.info("new post: %s", json.dumps(entry.model_dump(mode="json")))


def _log_media(upload: UploadFile | None) -> str | None:
    logger.info("media received: %s", upload.filename if upload else None)
    return None


def create_app(
    config: MicropubConfig,
    store: AuthorizationStore | None = None,
    new_post_handler: NewPostHandler = _log_new_post,
    content_received_handler: ContentReceivedHandler = _log_media,
) -> Starlette:
    if store is None:
        store = AuthorizationStore.on_disk(config.storage_root)

    app = Starlette(
        routes=[
            Route("/auth", auth_endpoint, methods=["GET"]),
            Route("/token", token_endpoint, methods=["POST"]),
            Route(f"/{MICROPUB_PATH}", micropub_query, methods=["GET"]),
            Route(f"/{MICROPUB_PATH}", micropub_create, methods=["POST"]),
            Route(f"/{MICROPUB_PATH}/{MEDIA_PATH}", media_upload, methods=["POST"]),
        ],
        exception_handlers={MicropubError: _on_micropub_error},
    )
    app.state.config = config
    app.state.provider = MicropubAuthProvider(store)
    app.state.new_post_handler = new_post_handler
    app.state.content_received_handler = content_received_handler
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Micropub server")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    # Audit logger — JSON-lines to <storage_root>/audit.log
    _audit_log_path = config.storage_root / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("micropub-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    import uvicorn

    app = _MicropubMiddleware(create_app(config))
    logger.info(f"micropub: serving {config.base_url} on {config.host}:{config.port}, "
                f"storage at {config.storage_root}")
    uvicorn.run(app, host=config.host, port=config.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
