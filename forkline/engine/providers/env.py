"""Engine subprocess environment and credential discovery."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from forkline.engine.models import ConnectionMethod

logger = logging.getLogger(__name__)

# Keys from other providers that would redirect or confuse the engine CLI.
STRIPPED_ENV_KEYS = (
    "OPENAI_API_KEY",
    "CLAUDE_CODE_USE_BEDROCK",
    "CLAUDE_CODE_USE_VERTEX",
    # Set when running inside another engine session; the CLI refuses to nest.
    "CLAUDECODE",
)


@dataclass
class Credential:
    """A remote engine identity. ``token`` is None when the CLI's own login is used."""
    method: ConnectionMethod
    token: str | None = None


def build_engine_env(
    *,
    credential: Credential | None = None,
    base_url: str | None = None,
    config_dir: str | Path | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the full environment for one engine invocation."""
    env = dict(os.environ if base_env is None else base_env)
    for key in STRIPPED_ENV_KEYS:
        if env.pop(key, None) is not None:
            logger.debug("Stripped %s from engine environment", key)

    env.setdefault("TERM", "xterm-256color")
    if "HOME" not in env:
        env["HOME"] = str(Path.home())

    overrides: dict[str, str] = {}
    if credential is not None and credential.token:
        if credential.method == ConnectionMethod.SUBSCRIPTION:
            overrides["CLAUDE_CODE_OAUTH_TOKEN"] = credential.token
        elif credential.method == ConnectionMethod.API_KEY and not base_url:
            overrides["ANTHROPIC_API_KEY"] = credential.token
        else:
            overrides["ANTHROPIC_AUTH_TOKEN"] = credential.token
    if base_url:
        overrides["ANTHROPIC_BASE_URL"] = base_url
    if config_dir is not None:
        Path(config_dir).mkdir(parents=True, exist_ok=True)
        overrides["CLAUDE_CONFIG_DIR"] = str(config_dir)

    for key, value in overrides.items():
        # An empty override removes the inherited value.
        if value == "":
            env.pop(key, None)
        else:
            env[key] = value
    return env


class EnvCredentialSource:
    """Finds a remote credential in the environment or the CLI's login state."""

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        cli_credentials_path: Path | None = None,
    ) -> None:
        self._environ = environ
        self._cli_credentials_path = (
            cli_credentials_path or Path.home() / ".claude" / ".credentials.json"
        )

    async def get_valid_credential(self) -> Credential | None:
        environ = os.environ if self._environ is None else self._environ
        oauth = (environ.get("CLAUDE_CODE_OAUTH_TOKEN") or "").strip()
        if oauth:
            return Credential(ConnectionMethod.SUBSCRIPTION, oauth)
        api_key = (environ.get("ANTHROPIC_API_KEY") or "").strip()
        if api_key:
            return Credential(ConnectionMethod.API_KEY, api_key)
        if self._cli_credentials_path.exists():
            logger.debug("Using engine CLI login at %s", self._cli_credentials_path)
            return Credential(ConnectionMethod.SUBSCRIPTION, None)
        return None
