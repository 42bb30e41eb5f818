"""Composition of the bridge components into one running service."""
from __future__ import annotations

import logging
from typing import Any

from .activity import ActivityLog
from .captcha import CaptchaChannel
from .config import BridgeConfig
from .correlator import RequestCorrelator
from .dispatcher import EventDispatcher
from .downloads import DownloadManager
from .muxing import FFmpegMuxer
from .poller import QueryPoller
from .transport import ReconnectBackoff, WebSocketTransport
from .webhook import WebhookClient

logger = logging.getLogger(__name__)


class RelayService:
    """Own every component and the process-wide seen set."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        transport: WebSocketTransport | None = None,
        muxer: FFmpegMuxer | None = None,
        webhook: WebhookClient | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self.config = config
        self.activity = activity or ActivityLog()
        self.seen: set[str] = set()
        self.transport = transport or WebSocketTransport(
            config.ws_url,
            backoff=ReconnectBackoff(config.reconnect_floor_s, config.reconnect_ceiling_s),
        )
        self.correlator = RequestCorrelator(
            self.transport.send, default_timeout=config.request_timeout_s
        )
        self.poller = QueryPoller(
            self.correlator.send,
            station_serial=config.station_serial,
            device_serial=config.device_serial,
            backoff_delays=config.backoff_delays_s,
            response_timeout=config.query_response_timeout_s,
        )
        self.muxer = muxer or FFmpegMuxer(config.ffmpeg_binary, timeout=config.mux_timeout_s)
        self.webhook = webhook or WebhookClient(
            config.webhook_url,
            station_serial=config.station_serial,
            auth=config.webhook_auth,
            timeout=config.webhook_timeout_s,
        )
        self.downloads = DownloadManager(
            self.correlator.send,
            self.muxer,
            self.webhook,
            output_dir=config.output_dir,
            retain_artifacts=config.retain_artifacts,
            activity=self.activity,
        )
        self.captcha = CaptchaChannel(
            self.correlator.send,
            public_url=f"http://localhost:{config.captcha_port}/captcha",
            activity=self.activity,
        )
        self.dispatcher = EventDispatcher(
            self.correlator,
            self.poller,
            self.downloads,
            self.captcha,
            device_serial=config.device_serial,
            station_serial=config.station_serial,
            seen=self.seen,
            api_schema=config.api_schema,
            connect_timeout=config.connect_timeout_s,
            activity=self.activity,
        )
        self.transport.set_callbacks(
            on_open=self.dispatcher.handle_open,
            on_message=self.dispatcher.dispatch,
            on_close=self.dispatcher.handle_close,
        )

    def start(self) -> None:
        if not self.muxer.available():
            logger.warning(
                "%s not found on PATH; recordings cannot be converted until it is installed",
                self.muxer.binary,
            )
        self.activity.record(
            "system",
            "startup",
            "Eufy bridge starting.",
            metadata={"ws_url": self.config.ws_url, "device": self.config.device_serial},
        )
        self.transport.start()

    async def aclose(self) -> None:
        self.activity.record("system", "shutdown", "Eufy bridge shutting down.")
        await self.transport.aclose()
        await self.dispatcher.aclose()
        await self.webhook.aclose()

    def status(self) -> dict[str, Any]:
        current = self.downloads.current_job
        return {
            "connected": self.transport.connected,
            "driver_connected": self.dispatcher.driver_connected,
            "polling": self.poller.polling,
            "pending_requests": self.correlator.pending_count,
            "queue_length": len(self.downloads.queued),
            "active_download": current.storage_path if current else None,
            "seen": len(self.seen),
            "captcha_pending": self.captcha.pending,
            "recent": [outcome.to_dict() for outcome in self.downloads.outcomes[-10:]],
        }


__all__ = ["RelayService"]
