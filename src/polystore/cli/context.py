"""CLI context management for store connections and shared state."""

from dataclasses import dataclass, field

from polystore.cli.parsing import load_collections
from polystore.core.config import StoreConfig
from polystore.core.store import DataStore, open_store


def resolve_config(
    engine: str | None,
    url: str | None,
    database: str | None,
    case_insensitive: bool,
    echo: bool,
) -> StoreConfig:
    """Resolve store configuration from CLI args over environment variables.

    Priority:
    1. Explicit CLI options
    2. POLYSTORE_* environment variables
    3. Defaults: json_row engine on sqlite:///./polystore.db
    """
    config = StoreConfig.from_env()
    updates: dict[str, object] = {"echo": echo}
    if engine:
        updates["engine"] = engine
    if url:
        updates["url"] = url
    if database:
        updates["database"] = database
    if case_insensitive:
        updates["case_sensitive"] = False
    return StoreConfig.model_validate({**config.model_dump(), **updates})


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Manages store lifecycle and output preferences.
    """

    config: StoreConfig
    schema_path: str | None
    json_output: bool
    _store: DataStore | None = field(default=None, init=False, repr=False)

    def get_store(self) -> DataStore:
        """Get or open the store (lazy initialization, tables created on open)."""
        if self._store is None:
            self._store = open_store(
                self.config, load_collections(self.schema_path), init=True
            )
        return self._store

    def close(self) -> None:
        """Close the store if open."""
        if self._store is not None:
            self._store.close()
            self._store = None
