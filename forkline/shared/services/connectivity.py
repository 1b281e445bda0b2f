"""Network probes: remote reachability and the local fallback model list."""
from __future__ import annotations

import logging

import aiohttp

logger = logging.getLogger(__name__)


class HttpConnectivityChecker:
    """Treats any HTTP response from the remote endpoint as "online"."""

    def __init__(self, url: str = "https://api.anthropic.com", timeout_seconds: float = 5.0) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def check_connectivity(self) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.head(self._url, allow_redirects=False) as resp:
                    logger.debug("Connectivity probe %s -> %d", self._url, resp.status)
                    return True
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.info("Connectivity probe to %s failed: %s", self._url, exc)
            return False


class OllamaModelCatalog:
    """Lists models installed in a local Ollama server via ``/api/tags``."""

    def __init__(self, base_url: str = "http://localhost:11434", timeout_seconds: float = 5.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def list_local_fallback_models(self) -> list[str]:
        url = f"{self._base_url}/api/tags"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        logger.warning("Ollama %s returned HTTP %d", url, resp.status)
                        return []
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            logger.info("Could not list Ollama models at %s: %s", url, exc)
            return []
        models = data.get("models") if isinstance(data, dict) else None
        return [
            str(m.get("name")) for m in models or []
            if isinstance(m, dict) and m.get("name")
        ]
