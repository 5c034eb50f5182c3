"""Store configuration.

The active engine is an explicit value handed to ``open_store``. Two stores
built from different configs share nothing.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

from polystore.core.types import EngineKind

ENV_PREFIX = "POLYSTORE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got '{value}'")


class StoreConfig(BaseModel):
    """Configuration for a single store instance."""

    engine: EngineKind = Field(..., description="Which engine backs the store")
    url: str = Field(..., description="SQLAlchemy URL or MongoDB URI")
    database: str | None = Field(
        default=None, description="MongoDB database name (defaults to the URI path)"
    )
    case_sensitive: bool = Field(
        default=True, description="Whether textual equality distinguishes case"
    )
    native_expand: bool = Field(
        default=True, description="Use JOIN/$lookup for expansion instead of follow-up reads"
    )
    echo: bool = Field(default=False, description="Echo SQL statements (debugging)")
    pool_size: int | None = Field(default=None, ge=1, description="Connection pool size")

    model_config = {"use_enum_values": True}

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        prefix: str = ENV_PREFIX,
    ) -> StoreConfig:
        """Resolve configuration from environment variables.

        Reads ``<prefix>ENGINE``, ``<prefix>URL``, ``<prefix>DATABASE``,
        ``<prefix>CASE_SENSITIVE`` and ``<prefix>NATIVE_EXPAND``.

        Args:
            environ: Mapping to read (defaults to ``os.environ``)
            prefix: Variable name prefix

        Returns:
            StoreConfig
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "engine": env.get(f"{prefix}ENGINE", EngineKind.JSON_ROW.value),
            "url": env.get(f"{prefix}URL", "sqlite:///./polystore.db"),
        }
        if database := env.get(f"{prefix}DATABASE"):
            values["database"] = database
        for key in ("CASE_SENSITIVE", "NATIVE_EXPAND"):
            raw = env.get(f"{prefix}{key}")
            if raw is not None:
                values[key.lower()] = _env_bool(raw, f"{prefix}{key}")
        return cls.model_validate(values)
