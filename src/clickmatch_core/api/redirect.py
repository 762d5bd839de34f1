"""Tracking-link redirect endpoint."""
import html
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from ..schemas.records import ClickEvent
from ..storage.schema import connect
from ..storage.store import AttributionStore
from ..tracking.click_capture import (
    COOKIE_MAX_AGE_SECONDS,
    CaptureOutcome,
    CaptureResult,
    ClickCaptureService,
)


logger = logging.getLogger(__name__)

router = APIRouter(tags=["tracking"])


INTERSTITIAL_TEMPLATE = """<!doctype html>
<html>
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex">
<meta http-equiv="refresh" content="{delay_s};url={url_attr}">
<title>Redirecting...</title>
</head>
<body>
<script>setTimeout(function () {{ window.location.replace({url_js}); }}, {delay_ms});</script>
</body>
</html>
"""


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _cookie_secure() -> bool:
    return os.getenv("CLICKMATCH_COOKIE_SECURE", "true").lower() not in ("0", "false", "no")


def _pixel_warmup_ms() -> int:
    return int(os.getenv("CLICKMATCH_PIXEL_WARMUP_MS", "0"))


def _persist_click(click: ClickEvent) -> None:
    """Background task: store one click on a dedicated connection.

    This function MUST be exception-safe; all errors are caught and logged.
    """
    try:
        db_conn = connect(initialize=False)
    except Exception as exc:
        logger.error("Cannot open database to persist click %s: %s", click.click_id, exc, exc_info=True)
        return

    try:
        ClickCaptureService(AttributionStore(db_conn)).persist_click(click)
    finally:
        db_conn.close()


def _tracked_response(result: CaptureResult) -> Response:
    warmup_ms = _pixel_warmup_ms()
    if warmup_ms > 0:
        response: Response = HTMLResponse(
            INTERSTITIAL_TEMPLATE.format(
                delay_s=max(1, round(warmup_ms / 1000)),
                delay_ms=warmup_ms,
                url_attr=html.escape(result.destination_url, quote=True),
                url_js=json.dumps(result.destination_url),
            )
        )
    else:
        response = RedirectResponse(result.destination_url, status_code=status.HTTP_302_FOUND)

    secure = _cookie_secure()
    for name, value in result.cookies.items():
        response.set_cookie(
            key=name,
            value=value,
            max_age=COOKIE_MAX_AGE_SECONDS,
            path="/",
            samesite="lax",
            httponly=False,
            secure=secure,
        )
    return response


@router.get(
    "/go/{tracking_link_id}",
    summary="Redirect through a tracking link",
    description=(
        "Records a click (after the response is sent), sets the click cookies "
        "and redirects to the destination with attribution parameters."
    ),
)
def track_redirect(
    tracking_link_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> Response:
    db_conn = connect(initialize=False)
    try:
        result = ClickCaptureService(AttributionStore(db_conn)).capture(
            tracking_link_id,
            user_agent=request.headers.get("user-agent"),
            referrer=request.headers.get("referer"),
            ip_address=_client_ip(request),
            fbp=request.cookies.get("_fbp"),
            fbc=request.cookies.get("_fbc"),
        )
    finally:
        db_conn.close()

    if result.outcome == CaptureOutcome.NOT_FOUND:
        return JSONResponse(
            {"error": "Tracking link not found"}, status_code=status.HTTP_404_NOT_FOUND
        )

    if result.outcome in (CaptureOutcome.INACTIVE, CaptureOutcome.BOT):
        return RedirectResponse(result.destination_url, status_code=status.HTTP_302_FOUND)

    background_tasks.add_task(_persist_click, result.click)
    return _tracked_response(result)
