from .backends import Provider, Repository, make_provider, supports_vector_search
from .service import StorageService

__all__ = ["Provider", "Repository", "StorageService", "make_provider", "supports_vector_search"]
