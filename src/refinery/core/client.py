"""OpenAI client wrapper used by the code synthesis and evaluation oracles."""

import os

import httpx
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessage, ChatCompletionMessageParam

from refinery.error_handling import InfrastructureError


class RefineryClient:
    """OpenAI-compatible chat client with Refinery-specific defaults."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        timeout: float = 360.0,
    ):
        self.current_model = model
        self.base_url = base_url or os.getenv(
            "REFINERY_BASE_URL", "https://api.openai.com/v1"
        )

        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            # Retries are owned by the workflow step runner
            max_retries=0,
        )

    async def chat(
        self,
        messages: list[ChatCompletionMessageParam],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> ChatCompletionMessage:
        """Send a chat completion request.

        Raises:
            InfrastructureError: If the API call fails for any reason
        """
        try:
            response = await self.client.chat.completions.create(
                model=model or self.current_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return response.choices[0].message

        except Exception as e:
            raise InfrastructureError(
                f"Oracle API error: {str(e)}", original_error=e
            ) from e
