"""
StorageService: the single entry point application code holds.

Resolves the provider for the configured backend kind once, at
construction, and delegates to it. Every model or repository operation made
before connect() has completed raises NotInitialized; disconnect() makes the
service uninitialised again.

    async with StorageService.from_config(get_config()) as storage:
        storage.register_model("Content")
        repo = storage.get_repository("Content")
"""

from __future__ import annotations

import logging
from typing import Any

from polystore.errors import NotInitialized
from polystore.models import (
    DEFAULT_FIND_LIMIT,
    BackendKind,
    ModelSchema,
    ProviderOptions,
)
from polystore.storage.backends import Provider, Repository, make_provider

logger = logging.getLogger(__name__)


class StorageService:
    def __init__(
        self,
        kind: BackendKind | str,
        options: ProviderOptions,
        default_limit: int = DEFAULT_FIND_LIMIT,
    ):
        self.kind = BackendKind.parse(kind)
        self.provider: Provider = make_provider(self.kind, options, default_limit=default_limit)
        self._initialized = False

    @classmethod
    def from_config(cls, cfg: dict | None = None) -> "StorageService":
        """Build from the `storage:` section of config.yaml."""
        if cfg is None:
            from polystore.config import get_config
            cfg = get_config()
        storage_cfg = cfg.get("storage", {}) or {}
        default_limit = storage_cfg.get("default_limit") or DEFAULT_FIND_LIMIT
        return cls(
            storage_cfg.get("backend", BackendKind.MONGODB.value),
            ProviderOptions.from_config(storage_cfg),
            default_limit=int(default_limit),
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self):
        if not self._initialized:
            raise NotInitialized("Database service is not initialized")

    async def connect(self):
        if self._initialized:
            return
        try:
            await self.provider.connect()
        except Exception as e:
            logger.error("Failed to initialize storage service: %s", e)
            raise
        self._initialized = True
        logger.info("Storage service initialized with %s backend", self.kind.value)

    async def disconnect(self):
        if not self._initialized:
            return
        self._initialized = False
        await self.provider.disconnect()
        logger.info("Storage service disconnected")

    def is_connected(self) -> bool:
        return self._initialized and self.provider.is_connected()

    def register_model(self, name: str, schema: ModelSchema | None = None) -> Any:
        self._require_initialized()
        return self.provider.register_model(name, schema)

    def get_repository(self, name: str) -> Repository:
        self._require_initialized()
        return self.provider.get_repository(name)

    async def __aenter__(self) -> "StorageService":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    def __repr__(self) -> str:
        return f"<StorageService kind={self.kind.value} initialized={self._initialized}>"
