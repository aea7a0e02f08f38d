"""
Centralized configuration management for the signing gateway.

Pydantic v2 settings management. The signing backend settings are
optional at startup so the gateway can boot (and answer health probes)
without them; any operation that needs the backend then fails with an
explicit BackendNotConfigured error instead of an obscure network failure.
"""

from functools import lru_cache
from typing import Annotated, Optional

from pydantic import AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    Optional[SecretStr],
    Field(
        default=None,
        description="Sensitive credential, redacted from logs",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment (GATEWAY_* variables).
    """

    # ---------------------------------------------------------------------
    # Signing backend
    # ---------------------------------------------------------------------

    backend_base_url: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description="Base URL of the external signing backend",
        ),
    ]

    backend_api_key: SensitiveEnv

    request_timeout_seconds: Annotated[
        float,
        Field(
            default=30.0,
            gt=0,
            le=120,
            description="Upper bound for a single backend call",
        ),
    ]

    backend_retry_attempts: Annotated[
        int,
        Field(
            default=3,
            ge=1,
            le=10,
            description=(
                "Attempts for idempotent GET calls on network failure. "
                "1 disables retries. POST calls are never retried."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Wallet connection
    # ---------------------------------------------------------------------

    wallet_client_id: Annotated[
        Optional[str],
        Field(
            default=None,
            description="Client identifier for the wallet-connection SDK",
        ),
    ]

    enable_deterministic_wallets: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Expose the identifier-derived wallet signing flow. "
                "DEMO ONLY: the identifier reconstructs the private key."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Session lifecycle
    # ---------------------------------------------------------------------

    max_pdf_size_mb: Annotated[
        int,
        Field(
            default=10,
            ge=1,
            le=25,
            description="Maximum accepted document size",
        ),
    ]

    session_ttl_minutes: Annotated[
        int,
        Field(
            default=30,
            ge=1,
            description="Pending sessions older than this are expired",
        ),
    ]

    default_message: Annotated[
        str,
        Field(
            default="Document signing request",
            min_length=1,
        ),
    ]

    # ---------------------------------------------------------------------
    # HTTP surface
    # ---------------------------------------------------------------------

    cors_origins: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @property
    def max_pdf_size_bytes(self) -> int:
        return self.max_pdf_size_mb * 1024 * 1024

    @property
    def backend_configured(self) -> bool:
        return (
            self.backend_base_url is not None
            and self.backend_api_key is not None
            and bool(self.backend_api_key.get_secret_value().strip())
        )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings provider within the process."""
    return Settings()
