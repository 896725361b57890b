"""Provider protocol: minimal interface for chat backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from castor.providers.models import CanonicalResponse, ProviderRequest


@runtime_checkable
class ChatProvider(Protocol):
    """Minimal provider protocol: one request in, one canonical response out."""

    name: str

    async def send(self, request: ProviderRequest) -> CanonicalResponse:
        """Send *request*; raise ProviderError on any classified failure."""
        ...

    async def aclose(self) -> None:
        """Release SDK client resources."""
        ...
