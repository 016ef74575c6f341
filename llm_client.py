"""Upstream selection for OpenAI-compatible chat completion endpoints."""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum

import httpx
import openai

import config as cfg
from errors import AuthorizationError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationConfig:
    endpoint_base_url: str = ""
    api_key: str = ""
    model_name: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.endpoint_base_url and self.api_key and self.model_name)

    def describe(self) -> dict[str, object]:
        """Loggable view of the config; the key itself is never included."""
        return {
            "url": chat_completions_base_url(self.endpoint_base_url),
            "model": self.model_name,
            "has_api_key": bool(self.api_key),
        }


class ConfigSource(str, Enum):
    CUSTOM = "custom"
    CREDENTIAL = "credential"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedConfig:
    config: GenerationConfig
    source: ConfigSource

    @property
    def quota_exempt(self) -> bool:
        """Only anonymous users of the shared default credentials are metered."""
        return self.source is not ConfigSource.DEFAULT


def default_config() -> GenerationConfig:
    return GenerationConfig(
        endpoint_base_url=cfg.AI_API_URL,
        api_key=cfg.AI_API_KEY,
        model_name=cfg.AI_MODEL_NAME,
    )


def resolve_config(
    explicit: GenerationConfig | None = None,
    access_credential: str | None = None,
    model_override: str | None = None,
    *,
    defaults: GenerationConfig | None = None,
    access_secret: str | None = None,
) -> ResolvedConfig:
    """Decide which endpoint, key and model a request uses.

    A fully populated ``explicit`` config wins outright. Otherwise a supplied
    credential must match the shared secret exactly, and the process-wide
    defaults apply with ``model_override`` taking the model slot. Whatever
    results must have all three fields set.
    """
    if defaults is None:
        defaults = default_config()
    if access_secret is None:
        access_secret = cfg.ACCESS_PASSWORD

    if explicit is not None and explicit.is_complete:
        resolved = ResolvedConfig(explicit, ConfigSource.CUSTOM)
    else:
        source = ConfigSource.DEFAULT
        if access_credential:
            if not access_secret or not hmac.compare_digest(
                access_credential.encode("utf-8"), access_secret.encode("utf-8")
            ):
                raise AuthorizationError("Invalid access password.")
            source = ConfigSource.CREDENTIAL
        resolved = ResolvedConfig(
            GenerationConfig(
                endpoint_base_url=defaults.endpoint_base_url,
                api_key=defaults.api_key,
                model_name=model_override or defaults.model_name,
            ),
            source,
        )

    if not resolved.config.is_complete:
        raise ConfigurationError(
            "AI configuration is incomplete: set the API URL, API key and model name in settings."
        )
    return resolved


def chat_completions_base_url(endpoint_base_url: str) -> str:
    """Return the base URL the ``/chat/completions`` path is appended to.

    Endpoints that already name an API version (``v1``/``v3``) are used
    as given; anything else gets ``/v1``.
    """
    base = endpoint_base_url.rstrip("/")
    if "v1" in base or "v3" in base:
        return base
    return f"{base}/v1"


def get_async_client(
    config: GenerationConfig,
    http_client: httpx.AsyncClient | None = None,
) -> openai.AsyncOpenAI:
    """Return an async client bound to ``config``.

    Retries are disabled: a failed generation is reported, never replayed.
    """
    # Always pass base_url explicitly so the openai SDK doesn't pick up a
    # blank OPENAI_BASE_URL env var that dotenv may have set from the .env file.
    kwargs: dict = {
        "base_url": chat_completions_base_url(config.endpoint_base_url),
        "api_key": config.api_key,
        "max_retries": 0,
        "timeout": cfg.UPSTREAM_TIMEOUT,
    }
    if http_client is not None:
        kwargs["http_client"] = http_client
    return openai.AsyncOpenAI(**kwargs)
