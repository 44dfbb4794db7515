# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
HTTP trigger for the check-in scheduler.

Hit by an external cron every few minutes:

    curl -H "Authorization: Bearer $CRON_SECRET" https://.../api/cron/process-checkins
"""
import hmac
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .scheduler import CheckinScheduler, build_scheduler
from .services import build_posthog

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

posthog = build_posthog(settings)

# No OpenAPI docs or schemas, there is nothing public here
app = FastAPI(
    openapi_url=None,
    docs_url=None,
    redoc_url=None,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if posthog is not None:
        posthog.capture_exception(exc)
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return JSONResponse(
        {"status": "error", "message": "something went wrong on our end"},
        status_code=500,
    )


def get_app_settings() -> Settings:
    return get_settings()


def get_scheduler(app_settings: Settings = Depends(get_app_settings)) -> CheckinScheduler:
    return build_scheduler(app_settings)


def require_cron_secret(
    authorization: str | None = Header(default=None),
    app_settings: Settings = Depends(get_app_settings),
) -> None:
    expected = app_settings.cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Cron secret not configured")

    provided = ""
    if authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/api/cron/process-checkins")
@app.post("/api/cron/process-checkins")
def process_checkins(
    _: None = Depends(require_cron_secret),
    scheduler: CheckinScheduler = Depends(get_scheduler),
):
    """Run one scheduler pass and return its counts."""
    report = scheduler.run()
    return {"status": "ok", "results": report.as_dict()}
