"""Out-of-band captcha hand-off between the driver and a human operator."""
from __future__ import annotations

import html
import logging
from typing import Any, Awaitable, Callable, Mapping

from .activity import ActivityLog
from .protocol import CMD_SET_CAPTCHA

logger = logging.getLogger(__name__)

SendCommand = Callable[[str, Mapping[str, Any] | None], Awaitable[object]]


class CaptchaChannel:
    """Hold the pending captcha and forward solutions to the driver."""

    def __init__(
        self,
        send: SendCommand,
        *,
        public_url: str = "http://localhost:8080/captcha",
        activity: ActivityLog | None = None,
    ) -> None:
        self._send = send
        self._public_url = public_url
        self._activity = activity
        self._captcha_id: str | None = None
        self._image: str | None = None

    @property
    def pending(self) -> bool:
        return self._captcha_id is not None or self._image is not None

    @property
    def captcha_id(self) -> str | None:
        return self._captcha_id

    @property
    def image(self) -> str | None:
        return self._image

    def on_captcha_request(self, captcha_id: str | None, image: str | None) -> None:
        self._captcha_id = captcha_id
        self._image = image
        logger.warning("CAPTCHA REQUIRED (id=%s); open %s to solve it", captcha_id, self._public_url)
        if self._activity is not None:
            self._activity.record(
                "captcha",
                "requested",
                "Driver requested a captcha solution.",
                metadata={"captcha_id": captcha_id},
            )

    async def solve(self, code: str) -> object:
        """Send ``code`` as the captcha solution and clear the pending state.

        Returns ``None`` when the command could not be sent; the captcha then
        stays pending so it can be submitted again after reconnecting.
        """

        cleaned = code.strip()
        if not cleaned:
            raise ValueError("Captcha code must not be empty")
        captcha_id = self._captcha_id
        logger.info("Sending captcha solution (id=%s)", captcha_id)
        result = await self._send(CMD_SET_CAPTCHA, {"captchaId": captcha_id, "captcha": cleaned})
        if result is None:
            logger.warning("Captcha solution not sent (id=%s); keeping it pending", captcha_id)
            return None
        self._captcha_id = None
        self._image = None
        if self._activity is not None:
            self._activity.record(
                "captcha",
                "submitted",
                "Captcha solution forwarded to the driver.",
                metadata={"captcha_id": captcha_id},
            )
        return result

    def image_src(self) -> str | None:
        if not self._image:
            return None
        if self._image.startswith("data:"):
            return self._image
        return f"data:image/png;base64,{self._image}"

    def render_page(self) -> str:
        """Render the HTML page showing the captcha and a submit form."""

        src = self.image_src()
        if src is None:
            return (
                "<!DOCTYPE html><html><body style=\"font-family:sans-serif;text-align:center;padding:4rem\">"
                "<h1>No captcha pending</h1>"
                "<p>Waiting for Eufy to request one&hellip;</p>"
                "<script>setTimeout(()=>location.reload(), 5000)</script>"
                "</body></html>"
            )
        captcha_id = html.escape(self._captcha_id or "unknown")
        return (
            "<!DOCTYPE html><html><body style=\"font-family:sans-serif;text-align:center;padding:2rem\">"
            "<h1>Captcha Required</h1>"
            f"<p>ID: <code>{captcha_id}</code></p>"
            f"<img src=\"{html.escape(src, quote=True)}\" "
            "style=\"border:2px solid #333;margin:1rem auto;display:block;max-width:400px\" />"
            "<form method=\"POST\" action=\"/captcha\" style=\"margin-top:1rem\">"
            "<input name=\"code\" type=\"text\" placeholder=\"Enter captcha code\" autofocus required "
            "style=\"font-size:1.5rem;padding:0.5rem;text-align:center;width:200px\" />"
            "<br/><br/>"
            "<button type=\"submit\" style=\"font-size:1.2rem;padding:0.5rem 2rem\">Submit</button>"
            "</form>"
            "</body></html>"
        )


__all__ = ["CaptchaChannel"]
