"""Host platform client infrastructure.

Provides the HostClient protocol and an httpx implementation of it.
"""

from butler_sync.host.client import HttpHostClient
from butler_sync.host.protocols import HostClient, first_text_part

__all__ = [
    "HostClient",
    "HttpHostClient",
    "first_text_part",
]
