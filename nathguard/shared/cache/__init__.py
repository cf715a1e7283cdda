"""In-process caching used by the stateful security components."""
from .ttl_cache import BoundedTTLCache

__all__ = ["BoundedTTLCache"]
