#!/usr/bin/env python3
"""
AI-powered article summarizer.

Turns an article title plus extracted text into a short review formatted as
Telegram HTML. Any failure (client unavailable, transient errors exhausted,
content filter, the model giving up) is reported as ``None`` so the caller can
fall back to a placeholder.
"""

from typing import Any, Dict, Optional

import yaml

from config import config, get_logger
from errors import ContentFilterError
from llm_client import chat_completion as ai_chat_completion
from telemetry import trace_span
from utils import markdown_to_telegram_html

logger = get_logger("summarizer")

AI_FAILED_SENTINEL = "AI FAILED"

DEFAULT_ARTICLE_PROMPT = """Summarize this article in plain text with simple formatting.

Format rules:
- Use **bold** for section headers
- Use bullet points for lists
- Keep it clean and readable
- NO HTML tags

Structure:
**Summary:** 2-3 sentences

**Key Points:**
- Point 1
- Point 2
- Point 3

**My Thoughts:** Your analysis

**Rating:** X/10 - Brief explanation

If you can't summarize, output: AI FAILED

Title: {title}

Content:
{content}"""


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, str]:
    """Load prompts from prompt.yaml; an unreadable file yields an empty mapping."""
    prompt_path = prompt_path or config.PROMPT_CONFIG_PATH
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning(f"Prompt configuration file not found at {prompt_path}; using built-in prompt")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading prompt configuration from {prompt_path}: {e}")
        return {}
    return prompts if isinstance(prompts, dict) else {}


class ArticleSummarizer:
    """Summarizes one article per call through the shared chat completion helper."""

    def __init__(self, prompt_template: Optional[str] = None, client: Optional[Any] = None,
                 retries: Optional[int] = None) -> None:
        if prompt_template is None:
            prompt_template = load_prompts().get("article_summary") or DEFAULT_ARTICLE_PROMPT
        self.prompt_template = prompt_template
        self.client = client
        self.retries = retries

    def build_prompt(self, title: str, content: str) -> str:
        try:
            return self.prompt_template.format(title=title, content=content)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Invalid article_summary prompt template ({e}); using built-in prompt")
            return DEFAULT_ARTICLE_PROMPT.format(title=title, content=content)

    @trace_span("summarize_article", tracer_name="summarizer",
                attr_from_args=lambda self, title, content: {"article.title": title[:200]})
    async def summarize(self, title: str, content: str) -> Optional[str]:
        """Return the summary as Telegram HTML, or None if no usable summary was produced."""
        messages = [{"role": "user", "content": self.build_prompt(title, content)}]
        try:
            raw = await ai_chat_completion(
                messages,
                purpose="article_summary",
                retries=self.retries,
                client_override=self.client,
            )
        except ContentFilterError as e:
            logger.warning(f"⚠️ AI summary blocked by content filter for '{title}': {e}")
            return None

        if not raw:
            return None
        if raw.strip().upper().startswith(AI_FAILED_SENTINEL):
            logger.warning(f"⚠️ Model could not summarize '{title}'")
            return None
        return markdown_to_telegram_html(raw)
