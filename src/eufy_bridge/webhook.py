"""Delivery of finished recordings to the n8n webhook."""
from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from .config import DEFAULT_WEBHOOK_TIMEOUT_S

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookClient:
    """Thin async HTTP client posting one JSON envelope per recording."""

    def __init__(
        self,
        url: str,
        *,
        station_serial: str | None = None,
        auth: tuple[str, str] | None = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._url = url
        self._station_serial = station_serial
        self._auth = auth
        self._timeout = float(timeout)
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._url

    def build_envelope(
        self,
        artifact: bytes,
        *,
        filename: str,
        device_serial: str,
        window_start: str | None,
        window_end: str | None,
        mime_type: str = "video/mp4",
    ) -> dict[str, Any]:
        return {
            "receivedAt": _isoformat(self._clock()),
            "stationSerialNumber": self._station_serial,
            "deviceId": device_serial,
            "windowStart": window_start,
            "windowEnd": window_end,
            "media": {
                "mimeType": mime_type,
                "base64": base64.b64encode(artifact).decode("ascii"),
                "filename": filename,
            },
        }

    async def deliver(
        self,
        artifact_path: Path,
        *,
        device_serial: str,
        window_start: str | None = None,
        window_end: str | None = None,
    ) -> bool:
        """POST ``artifact_path``; return ``True`` on a 2xx response.

        Failures are logged and reported through the return value only.
        """

        try:
            artifact = artifact_path.read_bytes()
        except OSError as exc:
            logger.error("Unable to read artifact %s: %s", artifact_path, exc)
            return False
        envelope = self.build_envelope(
            artifact,
            filename=artifact_path.name,
            device_serial=device_serial,
            window_start=window_start,
            window_end=window_end,
        )
        client = await self._get_client()
        try:
            response = await client.post(self._url, json=envelope)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Webhook returned HTTP %s for %s: %s",
                exc.response.status_code,
                artifact_path.name,
                exc.response.text.strip()[:200],
            )
            return False
        except httpx.HTTPError as exc:
            logger.error("Webhook request for %s failed: %s", artifact_path.name, exc)
            return False
        logger.info(
            "Sent %s to webhook (HTTP %s, %d bytes)",
            artifact_path.name,
            response.status_code,
            len(artifact),
        )
        return True

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: dict[str, Any] = {"timeout": self._timeout}
            if self._auth is not None:
                kwargs["auth"] = httpx.BasicAuth(*self._auth)
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["WebhookClient"]
