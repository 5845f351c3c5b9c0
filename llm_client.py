#!/usr/bin/env python3
"""Async OpenAI-compatible helper providing `chat_completion` with retry, content filter handling,
normalized content extraction and optional post-processing. Returns `None` on exhausted
retries or non-filter failures.

Works against OpenAI, Azure OpenAI (when AZURE_ENDPOINT is set) or any endpoint that
speaks the OpenAI chat completions protocol via OPENAI_BASE_URL (Gemini included)."""
from __future__ import annotations
from typing import List, Dict, Any, Optional, Callable
from asyncio import sleep

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError
from utils import RetryHelper

logger = get_logger("llm_client")

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not config.summaries_enabled():
        logger.debug("Missing AI config; client will not initialize")
        return None
    if config.AZURE_ENDPOINT:
        endpoint = (
            f"https://{config.AZURE_ENDPOINT}" if not str(config.AZURE_ENDPOINT).startswith("http") else config.AZURE_ENDPOINT
        )
        _client = AsyncAzureOpenAI(
            api_key=config.OPENAI_API_KEY,
            api_version=config.OPENAI_API_VERSION,
            azure_endpoint=endpoint,
            timeout=config.SUMMARIZER_HTTP_TIMEOUT,
            max_retries=0,
        )
    else:
        _client = AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL or None,
            timeout=config.SUMMARIZER_HTTP_TIMEOUT,
            max_retries=0,
        )
    return _client


def _model_name() -> Optional[str]:
    return config.DEPLOYMENT_NAME if config.AZURE_ENDPOINT else config.OPENAI_MODEL


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", {}) or {}
    if isinstance(message, dict) and message.get("refusal"):
        return ""
    content = getattr(message, "content", None) if not isinstance(message, dict) else message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
        return "\n".join(texts).strip()
    return ""


def _content_filter_details(error: Exception) -> Optional[Dict[str, Any]]:
    body = getattr(error, "body", {}) or {}
    error_obj = body.get("error") if isinstance(body, dict) and isinstance(body.get("error"), dict) else body
    if not isinstance(error_obj, dict):
        return None
    code = error_obj.get("code")
    inner = error_obj.get("innererror") if isinstance(error_obj.get("innererror"), dict) else {}
    if code == "content_filter" or inner.get("code") == "ResponsibleAIPolicyViolation":
        return error_obj
    return None


async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute a chat completion. Raises `ContentFilterError` on policy violations."""
    if messages is None:
        logger.error("chat_completion called without messages list")
        return None

    client = client_override or _get_client()
    if client is None:
        logger.warning("AI client unavailable; skipping %s", purpose)
        return None

    remaining = retries if retries is not None else config.SUMMARIZER_MAX_RETRIES
    backoff = RetryHelper(max_retries=remaining, base_delay=config.SUMMARIZER_RETRY_DELAY_BASE)
    attempt = 0

    while attempt <= remaining:
        try:
            resp = await client.chat.completions.create(model=_model_name(), messages=messages)
            choices = getattr(resp, "choices", None) or []
            if not choices:
                logger.error("No choices in %s response", purpose)
                return None
            fragments: List[str] = []
            refusal_detected = False
            for ch in choices:
                msg_obj = getattr(ch, "message", {}) or {}
                refusal_flag = msg_obj.get("refusal") if isinstance(msg_obj, dict) else getattr(msg_obj, "refusal", None)
                if refusal_flag:
                    refusal_detected = True
                    logger.warning("Refusal detected in %s response: %s", purpose, refusal_flag)
                txt = _extract_text(ch)
                if txt:
                    fragments.append(txt)
            if refusal_detected and not fragments:
                logger.warning("All choices refused for %s; returning None", purpose)
                return None
            raw = "\n".join(fragments).strip()
            if not raw:
                finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
                logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
                return None
            return postprocess(raw) if postprocess else raw
        except (OpenAIError, TimeoutError, OSError) as e:
            details = _content_filter_details(e)
            if details is not None:
                raise ContentFilterError(message=details.get("message", "Content filtered"), details=details)
            if attempt >= remaining:
                logger.error("%s request failed after %d retries: %s", purpose, remaining, e)
                return None
            delay = backoff.calculate_delay(attempt)
            attempt += 1
            logger.warning("%s transient AI error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await sleep(delay)

    return None


__all__ = ["chat_completion"]
