"""
core/resources.py -- The process-wide resource bundle.

Resources is built exactly once (api/main.py lifespan, or a test fixture)
and handed to every repository and service constructor. Nothing in the
codebase reaches for a module-level engine, Redis client or key: if a
component needs one, it receives it here.

Layer rule: core/ is the kernel. The cache and auth types are referenced for
annotations only; this module never imports them at runtime.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.engine import Engine

from core.config import Settings

if TYPE_CHECKING:
    from auth.tokens import TokenService
    from cache.store import CacheStore

logger = logging.getLogger("gatekeeper.config")


@dataclass
class Resources:
    settings: Settings
    engine: Engine
    cache: CacheStore
    token_service: TokenService

    def close(self) -> None:
        """Release pooled DB connections and the Redis connection pool."""
        self.cache.close()
        self.engine.dispose()
        logger.info("Resources released")
