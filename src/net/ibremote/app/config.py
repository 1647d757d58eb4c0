"""
Configuration Module for the ibremote Service

This module defines the configuration system for the ibremote service, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class serves as the central configuration point, loaded from environment
variables with defaults suitable for development environments. All application components
access settings and shared resources through typed AppKeys.

Key configuration areas include:
- The single OAuth client registration (client id, scopes, endpoints)
- Application, hosted site and API roots
- Session storage (Redis, cookie, optional encryption)
- API retry behaviour
- Monitoring and observability
"""

from typing import Final, Optional
import logging
from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings
from redis import asyncio as redis

from net.ibremote.app.metrics import MetricsClient


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the ibremote service.

    Values are loaded from environment variables of the same name (case-insensitive),
    with aliases where a deployment platform uses a different convention.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5200)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # OAuth client registration
    client_id: str
    """
    OAuth client identifier issued by the authorization server (required, no default).
    Set with CLIENT_ID environment variable.
    """

    requested_scopes: str = "device:read device:node"
    """
    Space separated scopes requested in the authorization request.
    Set with REQUESTED_SCOPES environment variable.
    """

    redirect_uri: str = "http://localhost:5200/"
    """
    Registered redirect URI. The page served there consumes the callback.
    Set with REDIRECT_URI environment variable.
    """

    authorization_endpoint: str = "https://info-beamer.com/oauth/authorize"
    """Authorization endpoint the visitor is redirected to"""

    token_endpoint: str = "https://info-beamer.com/oauth/token"
    """Token endpoint the authorization code is exchanged at"""

    api_root: str = "https://info-beamer.com/api/v1/"
    """Base URL of the resource API, including the trailing slash"""

    app_root: str = "http://localhost:5200/"
    """Root of this application, the default landing page"""

    web_root: str = "https://info-beamer.com/"
    """Root of the hosted site, the landing page for hosted visitors and OAuth errors"""

    hosted_source_marker: str = "ib"
    """
    Value of the ``source`` query parameter that marks entry from the hosted site.
    Set with HOSTED_SOURCE_MARKER environment variable.
    """

    # Session storage
    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/2?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the session store.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    store_namespace: str = "ibremote"
    """Key prefix for all session store entries"""

    session_cookie_name: str = "ibremote_browser"
    """Name of the cookie holding the browser id that scopes the session store"""

    encryption_key: Optional[Fernet] = None
    """
    Optional Fernet key. When set, session store values are encrypted at rest.
    Set with ENCRYPTION_KEY environment variable (urlsafe base64 key as produced by
    Fernet.generate_key()).
    """

    handshake_ttl: int = 600
    """
    Seconds a login flow may stay in flight. The state nonce, PKCE verifier and deferred
    navigation target expire after this long, so an abandoned login leaves nothing behind.
    Set with HANDSHAKE_TTL environment variable.
    """

    session_ttl: int = 30 * 24 * 60 * 60
    """
    Lifetime, in seconds, of every other session store entry (access token,
    return-to-hosted flag). Set with SESSION_TTL environment variable.
    """

    # API retry behaviour
    retry_after_default: int = 5
    """Seconds to wait on a 429 response without a usable Retry-After header"""

    api_retry_max_attempts: Optional[int] = None
    """
    Maximum attempts per API call while rate limited. Unset means retry forever.
    Set with API_RETRY_MAX_ATTEMPTS environment variable.
    """

    api_retry_jitter: float = 0.0
    """Upper bound, in seconds, of random jitter added to each Retry-After delay"""

    # Monitoring and observability settings
    metrics_backend: str = "none"
    """
    Metrics backend: 'telegraf', 'otel' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    otel_endpoint: Optional[str] = None
    """OTLP gRPC endpoint for the 'otel' metrics backend"""

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Optional[Fernet]:
        """
        Accept an existing Fernet object, a Fernet key string, or nothing.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid key
        """
        if v is None or isinstance(v, Fernet):
            return v
        elif isinstance(v, (str, bytes)):
            if len(v) == 0:
                return None
            return Fernet(v)
        raise ValueError("encryption_key must be a Fernet object or a Fernet key string")

    @field_validator("api_retry_max_attempts", mode="before")
    @classmethod
    def empty_max_attempts(cls, v) -> Optional[int]:
        if v == "":
            return None
        return v


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client backing the session store"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

# Request context keys, set by the browser session middleware
BrowserIdRequestKey: Final = web.RequestKey("browser_id", str)
"""RequestKey for the id of the browser making the request"""
