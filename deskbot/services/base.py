"""Base lifecycle contract for long-lived services."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod


class BaseService(ABC):
    """Base class for services constructed once in the app lifespan.

    Provides a common interface, logging setup, and the pattern all
    services follow: built at startup, initialized, shut down on exit.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"service.{name}")

    @abstractmethod
    async def initialize(self) -> None:
        """Async initialization (called during app lifespan startup)."""
        ...

    async def shutdown(self) -> None:
        """Optional cleanup (called during app lifespan shutdown)."""
        pass
