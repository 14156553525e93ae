"""Shared HTTP client for the local model runner.

The runner speaks an OpenAI-compatible JSON API over a Unix domain socket;
the host part of ``base_url`` is ignored by the socket connector.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from pipelines.errors import ConfigurationError, ModelError

logger = logging.getLogger(__name__)


class ModelRunnerClient:
    """Minimal JSON-over-HTTP client bound to a Unix socket."""

    def __init__(self, socket_path: str, model: str, base_url: str,
                 timeout: float = 120.0, session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            socket_path: Unix socket of the model runner
            model: Model name sent with every request
            base_url: API root, e.g. ``http://localhost/exp/vDD4.40/engines/llama.cpp/v1``
            timeout: Total request timeout in seconds
            session: Optional pre-built session (its connector decides the transport)
        """
        if session is None and not socket_path:
            raise ConfigurationError("socket path is required")
        if not model:
            raise ConfigurationError("model is required")

        self.socket_path = socket_path
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=self.socket_path),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``payload`` to ``{base_url}/{path}`` and return the decoded body.

        Raises:
            ModelError: on transport failure, non-200 status, undecodable
                body, or an ``error`` object in the response
        """
        session = await self._ensure_session()
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with session.post(url, json=payload) as response:
                raw = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ModelError(f"request failed: {e}") from e

        # Replies cut by max_tokens can end inside a multi-byte character
        body = raw.decode("utf-8", errors="replace")

        if status != 200:
            raise ModelError(f"API error (status {status}): {body}")

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ModelError(f"failed to decode response: {e}") from e

        if not isinstance(data, dict):
            raise ModelError("unexpected response shape")
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ModelError(f"API error: {message}")
        return data
