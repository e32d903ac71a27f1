"""
Infrastructure layer - external system integrations.
Keeps booking logic clean from transport details.
"""

from .redis_client import close_redis, get_redis

__all__ = ["get_redis", "close_redis"]
