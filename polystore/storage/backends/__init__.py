"""
Storage provider factory.

Usage:
    from polystore.storage.backends import make_provider
    provider = make_provider("mongodb", ProviderOptions(uri="mongodb://localhost:27017"))

Adding a new backend:
    1. Create polystore/storage/backends/<name>.py implementing Provider and Repository.
    2. Add a BackendKind member and an entry to _REGISTRY below.
    3. Set  storage.backend: <name>  in config.yaml.
    No other changes required.
"""

from polystore.models import BackendKind, ProviderOptions

from .base import (
    FilterLike,
    Provider,
    Repository,
    VectorSearchable,
    VectorSearchMixin,
    supports_vector_search,
)

_REGISTRY: dict[BackendKind, type[Provider]] = {}


def _register():
    """Lazy-import backends so each driver is only needed when it is used."""
    if _REGISTRY:
        return
    from .memgraph import MemgraphProvider
    from .mongodb import MongoProvider
    from .redis import RedisProvider
    _REGISTRY[BackendKind.MONGODB] = MongoProvider
    _REGISTRY[BackendKind.MEMGRAPH] = MemgraphProvider
    _REGISTRY[BackendKind.REDIS] = RedisProvider


def make_provider(kind: BackendKind | str, options: ProviderOptions, **kwargs) -> Provider:
    """
    Instantiate a provider by backend kind.

    Args:
        kind:     BackendKind or an alias ("mongo", "graph", "kv", ...).
        options:  Connection parameters.
        **kwargs: Passed to the provider constructor (e.g. default_limit).

    Raises:
        UnknownBackend: If the kind is not registered.
    """
    backend = BackendKind.parse(kind)
    _register()
    return _REGISTRY[backend](options, **kwargs)


__all__ = [
    "FilterLike",
    "Provider",
    "Repository",
    "VectorSearchMixin",
    "VectorSearchable",
    "make_provider",
    "supports_vector_search",
]
