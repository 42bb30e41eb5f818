"""FastAPI application exposing the captcha hand-off and bridge status."""
from __future__ import annotations

import json
import logging
from urllib.parse import parse_qs

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ValidationError

from .config import BridgeConfig
from .service import RelayService
from .version import APP_VERSION


class CaptchaPayload(BaseModel):
    captcha: str | None = None
    code: str | None = None

    def value(self) -> str | None:
        for candidate in (self.captcha, self.code):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


async def _read_captcha_payload(request: Request) -> CaptchaPayload:
    query_code = request.query_params.get("code")
    if query_code:
        return CaptchaPayload(code=query_code)
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        fields = parse_qs(body.decode("utf-8", errors="replace"))
        return CaptchaPayload(
            code=(fields.get("code") or [None])[0],
            captcha=(fields.get("captcha") or [None])[0],
        )
    try:
        raw = json.loads(body or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    try:
        return CaptchaPayload(**raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid captcha payload") from exc


def create_app(
    config: BridgeConfig | None = None,
    *,
    service: RelayService | None = None,
) -> FastAPI:
    app = FastAPI(title="Eufy Bridge", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if service is None:
        service = RelayService(config or BridgeConfig.from_env())
    app.state.service = service

    @app.on_event("startup")
    async def startup() -> None:
        logger.info("Eufy bridge %s starting", APP_VERSION)
        service.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await service.aclose()
        logger.info("Eufy bridge stopped")

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "captchaPending": service.captcha.pending,
            "connected": service.transport.connected,
        }

    @app.get("/captcha", response_class=HTMLResponse)
    async def captcha_page() -> str:
        return service.captcha.render_page()

    @app.post("/captcha")
    async def submit_captcha(request: Request) -> dict[str, object]:
        payload = await _read_captcha_payload(request)
        code = payload.value()
        if code is None:
            raise HTTPException(status_code=400, detail="Missing captcha/code field")
        if await service.captcha.solve(code) is None:
            raise HTTPException(status_code=503, detail="Not connected to the Eufy driver; try again")
        return {"ok": True, "code": code}

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return service.status()

    @app.get("/api/logs")
    async def get_activity_log(limit: int = 100, category: str | None = None) -> dict[str, object]:
        entries = service.activity.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    return app


__all__ = ["create_app"]
