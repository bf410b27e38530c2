"""Base agent class for shared oracle interaction functionality.

Agents render a Jinja prompt template, send it to the oracle through
RefineryClient and post-process the text they get back. Oracle failures
surface as InfrastructureError so the workflow step runner can retry them.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

import jinja2

from refinery.core.client import RefineryClient
from refinery.error_handling import InfrastructureError, RefineryError

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```[a-zA-Z0-9_+-]*[ \t]*\n?(.*?)```", re.DOTALL)


class AgentError(RefineryError):
    """Base exception for agent errors that are not oracle outages."""


def to_json(value: Any, indent: int = 2) -> str:
    """JSON-encode prompt context, rendering non-JSON values as strings."""
    return json.dumps(value, indent=indent, default=str)


class BaseAgent(abc.ABC):
    """Base class for Refinery oracle adapters."""

    SYSTEM_MESSAGE = ""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        client: RefineryClient | None = None,
        timeout: float = 120.0,
    ):
        """Initialize the base agent.

        Args:
            api_key: API key for the oracle service
            base_url: Optional base URL for the API
            model: Optional model name
            client: Pre-built client, used instead of api_key/base_url/model
            timeout: Seconds to wait for a single oracle call
        """
        if client is None:
            client = RefineryClient(
                api_key=api_key or "", model=model or "gpt-4o", base_url=base_url
            )
        self.client = client
        self.timeout = timeout

    @abc.abstractmethod
    def get_template_directory(self) -> Path:
        """Get the template directory for this agent."""

    def get_template_name(self) -> str:
        """Get the name of the template file."""
        return "prompt.j2"

    def _load_template(self, template_name: str) -> jinja2.Template:
        try:
            env = jinja2.Environment(
                loader=jinja2.FileSystemLoader(self.get_template_directory()),
                trim_blocks=True,
                lstrip_blocks=True,
                undefined=jinja2.StrictUndefined,
            )
            env.filters["tojson_pretty"] = to_json
            return env.get_template(template_name)
        except Exception as e:
            raise AgentError(f"Failed to load template {template_name}: {e}") from e

    def _render_template(self, template_name: str, context: dict[str, Any]) -> str:
        """Render a template from this agent's template directory.

        Raises:
            AgentError: If template rendering fails
        """
        try:
            template = self._load_template(template_name)
            return template.render(**context)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"Failed to render template {template_name}: {e}") from e

    async def _ask_oracle(self, prompt: str, max_tokens: int = 4096) -> str:
        """Send one prompt to the oracle and return its raw text.

        Raises:
            InfrastructureError: On timeout, transport/API failure or empty reply
        """
        messages = []
        if self.SYSTEM_MESSAGE:
            messages.append({"role": "system", "content": self.SYSTEM_MESSAGE})
        messages.append({"role": "user", "content": prompt})

        try:
            response_msg = await asyncio.wait_for(
                self.client.chat(messages, max_tokens=max_tokens),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise InfrastructureError(
                f"Oracle request timed out after {self.timeout} seconds",
                original_error=e,
            ) from e

        content = (response_msg.content or "").strip()
        if not content:
            raise InfrastructureError("No content received from oracle")
        return content

    @staticmethod
    def _strip_code_fences(response: str) -> str:
        """Remove markdown code fences and surrounding prose from a response.

        The first fenced block wins (```python preferred). An unterminated
        opening fence keeps everything after it. Unfenced text is returned
        as-is.
        """
        content = response.strip()

        python_block = re.search(r"```python[ \t]*\n?(.*?)```", content, re.DOTALL)
        if python_block:
            return python_block.group(1).strip()

        block = _FENCE_PATTERN.search(content)
        if block:
            return block.group(1).strip()

        if content.startswith("```"):
            first_newline = content.find("\n")
            return content[first_newline + 1 :].strip() if first_newline != -1 else ""

        return content
