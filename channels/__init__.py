"""Outbound/inbound transports for messaging devices."""
from channels.base import (
    ChannelError,
    TransientDeliveryError,
    RateLimitedError,
    PermanentDeliveryError,
    DeviceUnavailableError,
    TokenBucketRateLimiter,
    DeviceRateLimiters,
    OutboundTransport,
)
from channels.whatsapp_adapter import WhatsAppCloudTransport

__all__ = [
    "ChannelError", "TransientDeliveryError", "RateLimitedError",
    "PermanentDeliveryError", "DeviceUnavailableError",
    "TokenBucketRateLimiter", "DeviceRateLimiters", "OutboundTransport",
    "WhatsAppCloudTransport",
]
