"""
Cache management for the CLG MCP Server.
This module provides a TTL cache in front of a Resource Provider.
"""

import json
import logging
from typing import Any, Dict, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)


def make_cache_key(tool_name: str, arguments: Any) -> str:
    """Tool name plus canonical JSON of the arguments, so key order does not matter."""
    return f"{tool_name}:{json.dumps(arguments, sort_keys=True, default=str)}"


class CachedResourceProvider:
    """
    Wraps a provider and memoizes successful tool results.

    Exceptions from the wrapped provider propagate unchanged and are never cached,
    so a failing upstream is always reported as a failure.
    """

    def __init__(self, provider: Any, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the cached provider.

        Args:
            provider: Object exposing `async invoke(tool_name, arguments)`
            config: Cache configuration (`ttl_seconds`, `max_size`)
        """
        config = config or {}
        self.provider = provider
        self.ttl = config.get('ttl_seconds', 1800)
        self.max_size = config.get('max_size', 1000)
        self.cache: TTLCache = TTLCache(maxsize=self.max_size, ttl=self.ttl)
        self.hits = 0
        self.misses = 0
        logger.info(f"Provider cache initialized with ttl={self.ttl}s, max_size={self.max_size}")

    async def invoke(self, tool_name: str, arguments: Any) -> Any:
        key = make_cache_key(tool_name, arguments)
        if key in self.cache:
            self.hits += 1
            logger.debug(f"Cache hit for {tool_name}")
            return self.cache[key]

        self.misses += 1
        result = await self.provider.invoke(tool_name, arguments)
        self.cache[key] = result
        logger.debug(f"Cached result for {tool_name}")
        return result

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Provider cache cleared")

    async def close(self) -> None:
        """Clean up resources."""
        self.clear_cache()
        await self.provider.close()
