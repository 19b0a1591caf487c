"""
Base class for long-running evidence producers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class DiscoveryProvider(ABC):
    """
    An evidence producer that runs until stopped.

    Providers only publish to the mutation bus; they never touch the
    snapshot store's device collection directly. No event may be published
    after stop() returns.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this provider."""
        pass

    @abstractmethod
    async def start(self) -> None:
        """Begin producing evidence."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Cancel all work owned by this provider."""
        pass

    async def is_available(self) -> bool:
        """Check if this provider can run on this host."""
        return True
