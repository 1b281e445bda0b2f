"""Pick the engine and credential for one exchange.

Evaluated once per exchange, in order: an explicit custom engine config,
then the local fallback when offline mode is on and the remote endpoint is
unreachable, then the stored remote credential.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from forkline.engine.errors import ConfigurationError
from forkline.engine.models import ConnectionMethod, CustomEngineConfig
from forkline.engine.providers.env import Credential

logger = logging.getLogger(__name__)

# Ollama accepts any non-empty token on its Anthropic-compatible endpoint.
FALLBACK_AUTH_TOKEN = "ollama"


@runtime_checkable
class CredentialSource(Protocol):
    async def get_valid_credential(self) -> Credential | None: ...


@runtime_checkable
class ConnectivityChecker(Protocol):
    async def check_connectivity(self) -> bool: ...


@runtime_checkable
class FallbackModelCatalog(Protocol):
    async def list_local_fallback_models(self) -> list[str]: ...


@dataclass
class EngineSelection:
    """Outcome of engine selection for one exchange."""
    connection_method: ConnectionMethod
    credential: Credential | None = None
    model: str | None = None
    base_url: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.connection_method == ConnectionMethod.OFFLINE_FALLBACK


def custom_connection_method(config: CustomEngineConfig) -> ConnectionMethod:
    """Custom configs against the vendor endpoint count as API-key use."""
    if not config.base_url or "anthropic.com" in config.base_url:
        return ConnectionMethod.API_KEY
    return ConnectionMethod.CUSTOM_MODEL


class EngineSelector:
    def __init__(
        self,
        credentials: CredentialSource,
        connectivity: ConnectivityChecker,
        catalog: FallbackModelCatalog,
        *,
        fallback_base_url: str = "http://localhost:11434",
        preferred_fallback_model: str | None = None,
    ) -> None:
        self._credentials = credentials
        self._connectivity = connectivity
        self._catalog = catalog
        self._fallback_base_url = fallback_base_url
        self._preferred_fallback_model = preferred_fallback_model

    async def select(
        self,
        *,
        custom_config: CustomEngineConfig | None = None,
        offline_mode_enabled: bool = False,
        model: str | None = None,
    ) -> EngineSelection:
        if custom_config is not None:
            method = custom_connection_method(custom_config)
            logger.info("Engine selection: %s model=%s", method.value, custom_config.model)
            return EngineSelection(
                connection_method=method,
                credential=Credential(method, custom_config.token),
                model=custom_config.model,
                base_url=custom_config.base_url,
            )

        if offline_mode_enabled and not await self._connectivity.check_connectivity():
            return await self._select_fallback()

        credential = await self._credentials.get_valid_credential()
        if credential is None:
            raise ConfigurationError(
                "No valid engine credential. Log in or provide an API key."
            )
        logger.info(
            "Engine selection: %s model=%s",
            credential.method.value, model or "<default>",
        )
        return EngineSelection(
            connection_method=credential.method,
            credential=credential,
            model=model,
        )

    async def _select_fallback(self) -> EngineSelection:
        models = await self._catalog.list_local_fallback_models()
        if not models:
            raise ConfigurationError(
                "Offline and no local fallback models are installed. "
                "Install a model with Ollama or reconnect."
            )
        chosen = (
            self._preferred_fallback_model
            if self._preferred_fallback_model in models
            else models[0]
        )
        logger.warning(
            "Remote engine unreachable; using local fallback model %s at %s",
            chosen, self._fallback_base_url,
        )
        return EngineSelection(
            connection_method=ConnectionMethod.OFFLINE_FALLBACK,
            credential=Credential(ConnectionMethod.OFFLINE_FALLBACK, FALLBACK_AUTH_TOKEN),
            model=chosen,
            base_url=self._fallback_base_url,
        )
