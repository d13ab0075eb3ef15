"""In-memory cloud for engine tests.

Provides a scriptable transport and a media-channel resource handler so
the reconcile/wait engine can be exercised end to end without a real
service.

Usage:
    from fake_cloud import NOT_FOUND, ChannelHandler, FakeTransport

    transport = FakeTransport()
    transport.script("ch-1", NOT_FOUND, "CREATING", "IDLE")
"""

from .channel import CHANNEL_TYPE, MAINTENANCE_DEFAULTS, ChannelHandler
from .transport import NOT_FOUND, FakeTransport

__all__ = [
    "CHANNEL_TYPE",
    "MAINTENANCE_DEFAULTS",
    "NOT_FOUND",
    "ChannelHandler",
    "FakeTransport",
]
