from __future__ import annotations

import google.generativeai as genai

from visibility_check import config
from visibility_check.providers.base import (
    SYSTEM_PROMPT,
    StreamingChatAdapter,
    StreamScan,
    TokenPricing,
    Usage,
)


def _chunk_text(chunk) -> str:
    # .text raises when a chunk carries no text part (safety block, finish marker)
    try:
        return chunk.text
    except ValueError:
        return ""


class GeminiAdapter(StreamingChatAdapter):
    key = "gemini"
    model = "gemini-2.0-flash-exp"
    env_keys = ("GEMINI_API_KEY", "GOOGLE_API_KEY")
    pricing = TokenPricing(0.075, 0.30)

    def stream(self, api_key: str, prompt: str, scan: StreamScan) -> Usage:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(
            self.model,
            system_instruction=SYSTEM_PROMPT,
            generation_config={
                "temperature": config.TEMPERATURE,
                "max_output_tokens": config.MAX_OUTPUT_TOKENS,
            },
        )
        response = model.generate_content(
            prompt,
            stream=True,
            request_options={"timeout": self.transport_timeout},
        )
        for chunk in response:
            scan.feed(_chunk_text(chunk))

        meta = getattr(response, "usage_metadata", None)
        if meta is None:
            return Usage()
        return Usage(
            input_tokens=getattr(meta, "prompt_token_count", 0) or 0,
            output_tokens=getattr(meta, "candidates_token_count", 0) or 0,
            total_tokens=getattr(meta, "total_token_count", None),
        )
