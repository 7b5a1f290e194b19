import os
import json
import math
import logging
from html import escape
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

ROUTE_PATH = "/api/submit"
DEFAULT_CONTENT_TYPE = "application/x-www-form-urlencoded"
RAW_EXCERPT_CHARS = 200


# ----- Settings -----
def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if not value or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring {name}={value!r}: not a number")
        return None


class Settings(BaseModel):
    gas_webapp_url: Optional[str] = None
    status_page: bool = True
    upstream_timeout: Optional[float] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gas_webapp_url=os.getenv("GAS_WEBAPP_URL") or None,
            status_page=_env_flag("STATUS_PAGE_ENABLED", True),
            upstream_timeout=_env_float("GAS_TIMEOUT_SECONDS"),
        )


# ----- Models -----
class ErrorEnvelope(BaseModel):
    ok: bool = False
    msg: str
    raw: Optional[str] = None


def cors_headers(settings: Settings) -> Dict[str, str]:
    methods = "GET, POST, OPTIONS" if settings.status_page else "POST, OPTIONS"
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


def _error(settings: Settings, status_code: int, msg: str, raw: Optional[str] = None) -> JSONResponse:
    envelope = ErrorEnvelope(msg=msg, raw=raw)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=cors_headers(settings),
    )


def mask_url(value: str) -> str:
    """Keep the first 18 and last 10 characters of long values."""
    if len(value) <= 30:
        return value
    return f"{value[:18]}...{value[-10:]}"


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


def _parse_finite_float(literal: str) -> float:
    value = float(literal)
    if math.isinf(value):
        raise ValueError(f"number out of range: {literal}")
    return value


def parse_upstream_payload(text: str) -> Optional[Any]:
    """Best-effort JSON parse of the upstream body.

    Returns None when there is nothing usable: an empty body, a body that is
    not strict JSON (NaN, Infinity and floats that overflow are rejected), or
    a JSON value that is null/false/0/"". Objects and arrays are always
    returned, even when empty.
    """
    if not text:
        logger.warning("Upstream returned an empty body")
        return None
    try:
        data = json.loads(text, parse_constant=_reject_constant, parse_float=_parse_finite_float)
    except ValueError as e:
        logger.warning(f"Upstream body is not JSON: {e}")
        return None
    if data is None or data is False or data == "" or (type(data) in (int, float) and data == 0):
        logger.warning(f"Upstream JSON value is empty: {text[:RAW_EXCERPT_CHARS]!r}")
        return None
    return data


# ----- Status page -----
def _build_status_html(settings: Settings) -> str:
    if settings.gas_webapp_url:
        target = f"<code>{escape(mask_url(settings.gas_webapp_url))}</code>"
        state = "<span style=\"color:#059669;\">configured</span>"
    else:
        target = "<em>not set</em>"
        state = "<span style=\"color:#dc2626;\">Missing GAS_WEBAPP_URL</span>"
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset=\"utf-8\" />
      <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
      <title>Submit relay status</title>
    </head>
    <body style=\"margin:0; padding:24px; background:#f3f4f6; font-family:ui-sans-serif, system-ui, -apple-system, 'Segoe UI', Roboto, Arial; color:#111827;\">
      <div style=\"max-width:640px; margin:0 auto; background:#ffffff; padding:24px; border-radius:8px;\">
        <h1 style=\"margin:0 0 12px; font-size:22px;\">{ROUTE_PATH}</h1>
        <p style=\"margin:8px 0;\">Status: {state}</p>
        <p style=\"margin:8px 0;\">Upstream: {target}</p>
        <p style=\"margin:8px 0; color:#6b7280; font-size:13px;\">
          POST form-encoded data to this endpoint; it is forwarded to the Apps Script web app and the JSON reply is returned.
        </p>
        <button id=\"test\" style=\"margin-top:12px; padding:8px 16px; border:0; border-radius:6px; background:#2563eb; color:#ffffff; cursor:pointer;\">Send test POST</button>
        <pre id=\"out\" style=\"margin-top:16px; padding:12px; background:#111827; color:#e5e7eb; border-radius:6px; white-space:pre-wrap;\"></pre>
      </div>
      <script>
        document.getElementById("test").addEventListener("click", async () => {{
          const out = document.getElementById("out");
          out.textContent = "Sending...";
          try {{
            const body = new URLSearchParams({{ name: "status-page-test", ts: new Date().toISOString() }});
            const resp = await fetch("{ROUTE_PATH}", {{
              method: "POST",
              headers: {{ "content-type": "application/x-www-form-urlencoded" }},
              body: body.toString(),
            }});
            const text = await resp.text();
            out.textContent = "HTTP " + resp.status + "\\n" + text;
          }} catch (err) {{
            out.textContent = "Request failed: " + err;
          }}
        }});
      </script>
    </body>
    </html>
    """


# ----- Forwarding -----
async def _forward(request: Request, settings: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> Response:
    try:
        raw = await request.body()
        content_type = request.headers.get("content-type") or DEFAULT_CONTENT_TYPE

        if not settings.gas_webapp_url:
            logger.warning("GAS_WEBAPP_URL is not configured")
            return _error(settings, 500, "Missing GAS_WEBAPP_URL")

        logger.info(
            f"Forwarding {len(raw)} bytes ({content_type}) to {mask_url(settings.gas_webapp_url)}"
        )
        async with httpx.AsyncClient(
            timeout=settings.upstream_timeout,
            follow_redirects=True,
            transport=transport,
        ) as client:
            resp = await client.post(
                settings.gas_webapp_url,
                content=raw,
                headers={"content-type": content_type},
            )
            text = resp.text

        data = parse_upstream_payload(text)
        if data is None:
            logger.warning(f"Upstream answered HTTP {resp.status_code} without usable JSON")
            return _error(settings, 502, "GAS returned non-JSON", raw=text[:RAW_EXCERPT_CHARS])

        return JSONResponse(status_code=200, content=data, headers=cors_headers(settings))
    except Exception as e:
        logger.exception("Forwarding to GAS failed")
        return _error(settings, 500, str(e) or e.__class__.__name__)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the relay app; `transport` replaces the outbound network layer."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="GAS Submit Relay", version="1.0.0")

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            return _error(settings, 405, "Method not allowed")
        return _error(settings, exc.status_code, str(exc.detail))

    @application.api_route(
        ROUTE_PATH,
        methods=["GET", "POST", "OPTIONS", "PUT", "PATCH", "DELETE", "HEAD"],
    )
    async def submit(request: Request):
        method = request.method.upper()
        if method == "OPTIONS":
            return Response(status_code=204, headers=cors_headers(settings))
        if method == "GET" and settings.status_page:
            return HTMLResponse(content=_build_status_html(settings), headers=cors_headers(settings))
        if method != "POST":
            return _error(settings, 405, "Method not allowed")
        return await _forward(request, settings, transport)

    return application


# ASGI app for Vercel Python function: export `app`
app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
