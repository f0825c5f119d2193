"""
Safe Controller - Web Server
=============================
HTTP front end for the safe.

The HTML form in ``static/index.html`` posts to ``/safe/``; the name of the
button pressed selects the action. Replies are HTML fragments, one device reply
per line.
"""

import base64
import binascii
import secrets
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import anyio

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from hardware_interface import LinkError, SafeConfig
from image_codec import FormatError, NotPasswordImageError
from lock_control import CommandFailedError, LockController, ValidationError


# =============================================================================
# CONSTANTS
# =============================================================================
MAX_UPLOAD_BYTES = 1024 * 1024
AUTH_REALM = 'Basic realm="Restricted safe"'
UPLOAD_FIELD = "fileToUpload"

# Chrome buffers this much before rendering a chunked response progressively
RENDER_PRELUDE = "<!--" + " " * 4096 + "-->\n"

IMAGE_ACTIONS = {
    "image_test": "test",
    "image_unlock_1": "unlock",
    "image_unlock_all": "clear",
}
PASSWORD_ACTIONS = {
    "unlock_1": "unlock",
    "unlock_all": "clear",
    "pwtest": "test",
}

CLOSE_HEADERS = {"Connection": "close"}


def html_lines(lines: List[str]) -> str:
    return "".join(f"{line}<br>\n" for line in lines)


def _html(lines: List[str]) -> HTMLResponse:
    return HTMLResponse(html_lines(lines), headers=CLOSE_HEADERS)


def check_basic_auth(header: Optional[str], config: SafeConfig) -> bool:
    """Validate an ``Authorization: Basic ...`` header against the config."""
    if not header or not header.lower().startswith("basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    user, _, password = decoded.partition(":")
    return (
        secrets.compare_digest(user, config.auth_user or "")
        and secrets.compare_digest(password, config.auth_pass or "")
    )


async def _read_form(request: Request) -> tuple:
    """Merge query and body fields the way a classic form handler sees them."""
    values: Dict[str, str] = dict(request.query_params)
    upload: Optional[bytes] = None

    if request.method == "POST":
        form = await request.form()
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key == UPLOAD_FIELD:
                    upload = await value.read(MAX_UPLOAD_BYTES + 1)
            else:
                values[key] = value
    return values, upload


def create_app(config: SafeConfig, controller: LockController) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Service configuration (auth, static dir)
        controller: Controller bound to a synchronized device link
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Safe web server started")
        yield
        controller.link.close()
        logger.info("Safe web server stopped")

    app = FastAPI(
        title="Safe Controller",
        description="Web control for a serial attached electronic safe",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def basic_auth(request: Request, call_next):
        if config.auth_enabled and not check_basic_auth(request.headers.get("authorization"), config):
            logger.warning(f"Rejected unauthenticated request for {request.url.path}")
            return PlainTextResponse(
                "Unauthorized.",
                status_code=401,
                headers={"WWW-Authenticate": AUTH_REALM},
            )
        return await call_next(request)

    # =========================================================================
    # API ENDPOINTS
    # =========================================================================

    @app.get("/api/status")
    async def get_status():
        """Link state and statistics (no device traffic)."""
        return {
            "connected": controller.link.is_connected,
            "link": controller.link.statistics,
        }

    @app.api_route("/safe/", methods=["GET", "POST"])
    async def safe(request: Request):
        """Form dispatch for all safe actions."""
        values, upload = await _read_form(request)

        def pressed(name: str) -> bool:
            return bool(values.get(name))

        try:
            if pressed("status"):
                return _html([await run_in_threadpool(controller.status)])

            if pressed("open"):
                return await _stream_open(controller, values.get("duration", ""))

            for action, verb in PASSWORD_ACTIONS.items():
                if pressed(action):
                    reply = await run_in_threadpool(controller.run, verb, values.get("unlock", ""))
                    return _html([reply])

            if pressed("lock"):
                set_reply, test_reply = await run_in_threadpool(
                    controller.lock, values.get("lock1", ""), values.get("lock2", "")
                )
                return _html(["Setting password: " + set_reply, "Testing password: " + test_reply])

            if pressed("random"):
                image = await run_in_threadpool(controller.random_password_image)
                return Response(
                    content=image.data,
                    media_type=image.media_type,
                    headers={
                        **CLOSE_HEADERS,
                        "Content-Disposition": f'attachment; filename="{image.filename}"',
                    },
                )

            for action, verb in IMAGE_ACTIONS.items():
                if pressed(action):
                    if upload is not None and len(upload) > MAX_UPLOAD_BYTES:
                        return _html(["ERROR File too large"])
                    reply = await run_in_threadpool(controller.command_from_image, verb, upload)
                    return _html([reply])

        except FormatError as e:
            return _html([f"Could not parse JPEG file: {e}"])
        except (ValidationError, NotPasswordImageError) as e:
            return _html([str(e)])
        except CommandFailedError as e:
            return _html(str(e).splitlines())
        except LinkError as e:
            logger.error(f"Serial link failure: {e}")
            return _html([f"ERROR Serial link failure: {e}"])

        return _html(["Unknown request"])

    # Static front end last so it does not shadow the API
    app.mount(
        "/",
        StaticFiles(directory=str(config.html_dir), html=True, check_dir=False),
        name="static",
    )

    return app


async def _stream_open(
    controller: LockController,
    duration: str,
    cancel: Optional[threading.Event] = None,
) -> Response:
    """
    Stream the progress of an open command as it arrives.

    ``cancel`` is set once the response body stops, whether the open finished
    or the client went away, which frees the link for the next request.
    """
    if cancel is None:
        cancel = threading.Event()
    try:
        lines = controller.stream_open(duration or None, cancel=cancel)
        first = await run_in_threadpool(next, lines)
    except ValidationError as e:
        return _html([str(e)])

    async def body() -> AsyncIterator[str]:
        try:
            yield RENDER_PRELUDE
            yield f"{first}<br>\n"
            while True:
                # Abandoned on disconnect; the worker sees cancel and returns
                line = await anyio.to_thread.run_sync(next, lines, None, abandon_on_cancel=True)
                if line is None:
                    break
                yield f"{line}<br>\n"
        finally:
            cancel.set()
            if not lines.gi_running:
                lines.close()

    return StreamingResponse(body(), media_type="text/html", headers=CLOSE_HEADERS)
