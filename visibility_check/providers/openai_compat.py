"""ChatGPT plus the engines that speak the OpenAI chat-completions protocol."""

from __future__ import annotations

import logging
from typing import Optional

from openai import OpenAI

from visibility_check import config
from visibility_check.providers.base import (
    SYSTEM_PROMPT,
    RequestPricing,
    StreamingChatAdapter,
    StreamScan,
    TokenPricing,
    Usage,
)

logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(StreamingChatAdapter):
    base_url: Optional[str] = None
    # Whether the endpoint accepts stream_options={"include_usage": True}
    include_usage = True

    def client(self, api_key: str) -> OpenAI:
        return OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.transport_timeout,
            max_retries=0,
        )

    def stream(self, api_key: str, prompt: str, scan: StreamScan) -> Usage:
        extra = {"stream_options": {"include_usage": True}} if self.include_usage else {}
        response = self.client(api_key).chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=config.MAX_OUTPUT_TOKENS,
            temperature=config.TEMPERATURE,
            stream=True,
            **extra,
        )
        scan.on_expire(response.close)

        usage = Usage()
        try:
            for chunk in response:
                if chunk.choices:
                    scan.feed(chunk.choices[0].delta.content)
                else:
                    scan.feed(None)
                if getattr(chunk, "usage", None):
                    usage = Usage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                        total_tokens=chunk.usage.total_tokens,
                    )
        finally:
            response.close()
        return usage


class ChatGPTAdapter(OpenAICompatibleAdapter):
    key = "openai"
    model = "gpt-4o-mini"
    env_keys = ("OPENAI_API_KEY",)
    pricing = TokenPricing(0.15, 0.60)


class GrokAdapter(OpenAICompatibleAdapter):
    key = "grok"
    model = "grok-3"
    env_keys = ("GROK_API_KEY", "XAI_API_KEY")
    base_url = "https://api.x.ai/v1"
    pricing = TokenPricing(5.0, 15.0)


class DeepSeekAdapter(OpenAICompatibleAdapter):
    key = "deepseek"
    model = "deepseek-chat"
    env_keys = ("DEEPSEEK_API_KEY",)
    base_url = "https://api.deepseek.com"
    pricing = TokenPricing(0.27, 1.10)


class PerplexityAdapter(OpenAICompatibleAdapter):
    key = "perplexity"
    model = "sonar"
    env_keys = ("PERPLEXITY_API_KEY",)
    base_url = "https://api.perplexity.ai"
    include_usage = False
    pricing = RequestPricing(0.005)
