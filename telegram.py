#!/usr/bin/env python3
"""
Telegram delivery client.

Sends one message per call to the Bot API ``sendMessage`` method and classifies
the response into a typed outcome. The client never retries on its own; the
run controller decides what to do with a ``RateLimited`` or ``Failed`` result.
"""

from asyncio import TimeoutError
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from models import Delivered, DeliveryOutcome, Failed, RateLimited
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("telegram")

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LENGTH = 4096
HTTP_TOO_MANY_REQUESTS = 429


def _mask_token(token: str, show: int = 4) -> str:
    if not token:
        return "<missing>"
    if len(token) <= show * 2:
        return "*" * len(token)
    return f"{token[:show]}***{token[-show:]}"


def _as_seconds(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class TelegramClient:
    """Thin transport wrapper around ``sendMessage`` for a single chat."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        session: ClientSession,
        *,
        parse_mode: Optional[str] = "HTML",
        disable_preview: bool = False,
        timeout: Optional[int] = None,
        default_retry_after: Optional[int] = None,
        api_base: str = TELEGRAM_API_BASE,
    ) -> None:
        self.token = token
        self.chat_id = chat_id
        self.session = session
        self.parse_mode = parse_mode
        self.disable_preview = disable_preview
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.default_retry_after = (
            default_retry_after if default_retry_after is not None else config.DEFAULT_RETRY_AFTER
        )
        self.api_base = api_base.rstrip("/")

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/bot{self.token}/sendMessage"

    def build_payload(self, text: str) -> Dict[str, Any]:
        """Build the sendMessage body.

        Over-long HTML is flattened to plain text before it is cut, since a cut
        inside a tag or entity is rejected by the parser. The message is then
        sent without a parse mode.
        """
        parse_mode = self.parse_mode
        if len(text) > TELEGRAM_MAX_MESSAGE_LENGTH and parse_mode == "HTML":
            logger.warning(f"Message of {len(text)} chars exceeds {TELEGRAM_MAX_MESSAGE_LENGTH}; sending as plain text")
            text = BeautifulSoup(text, "html.parser").get_text()
            parse_mode = None
        payload: Dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": truncate_string(text, TELEGRAM_MAX_MESSAGE_LENGTH),
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if self.disable_preview:
            payload["disable_web_page_preview"] = True
        return payload

    @trace_span("telegram.send", tracer_name="telegram")
    async def send(self, text: str) -> DeliveryOutcome:
        """Send one message. Exactly one HTTP request is made per call."""
        payload = self.build_payload(text)
        try:
            async with self.session.post(
                self.endpoint,
                json=payload,
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                body = await self._read_body(response)
                return self.classify(response.status, response.headers, body)
        except TimeoutError:
            logger.warning(f"Telegram request timed out after {self.timeout}s (bot {_mask_token(self.token)})")
            return Failed(reason=f"timed out after {self.timeout}s")
        except ClientError as e:
            logger.warning(f"Telegram request failed: {type(e).__name__}: {e}")
            return Failed(reason=f"{type(e).__name__}: {e}")

    async def _read_body(self, response) -> Optional[Dict[str, Any]]:
        try:
            data = await response.json(content_type=None)
        except (ValueError, ClientError):
            return None
        return data if isinstance(data, dict) else None

    def classify(self, status: int, headers, body: Optional[Dict[str, Any]]) -> DeliveryOutcome:
        """Map an HTTP status, headers and JSON body onto a delivery outcome."""
        body = body or {}
        parameters = body.get("parameters") if isinstance(body.get("parameters"), dict) else {}
        retry_after = _as_seconds(parameters.get("retry_after"))
        if retry_after is not None:
            return RateLimited(retry_after=retry_after)

        if 200 <= status < 300 and body.get("ok", True):
            return Delivered()

        if status == HTTP_TOO_MANY_REQUESTS:
            header_value = _as_seconds((headers or {}).get("Retry-After"))
            return RateLimited(retry_after=header_value if header_value is not None else self.default_retry_after)

        description = body.get("description") or f"HTTP {status}"
        return Failed(reason=str(description), status=status)
