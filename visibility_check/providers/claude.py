from __future__ import annotations

import anthropic

from visibility_check import config
from visibility_check.providers.base import (
    SYSTEM_PROMPT,
    StreamingChatAdapter,
    StreamScan,
    TokenPricing,
    Usage,
)


class ClaudeAdapter(StreamingChatAdapter):
    key = "claude"
    model = "claude-3-7-sonnet-20250219"
    env_keys = ("ANTHROPIC_API_KEY",)
    pricing = TokenPricing(3.0, 15.0)

    def stream(self, api_key: str, prompt: str, scan: StreamScan) -> Usage:
        client = anthropic.Anthropic(api_key=api_key, timeout=self.transport_timeout, max_retries=0)
        with client.messages.stream(
            model=self.model,
            max_tokens=config.MAX_OUTPUT_TOKENS,
            temperature=config.TEMPERATURE,
            system=SYSTEM_PROMPT,
            messages=[
                {"role": "user", "content": prompt}
            ],
        ) as stream:
            scan.on_expire(stream.close)
            for text in stream.text_stream:
                scan.feed(text)
            final = stream.get_final_message()

        return Usage(
            input_tokens=final.usage.input_tokens or 0,
            output_tokens=final.usage.output_tokens or 0,
        )
