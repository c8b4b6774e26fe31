"""Clients for external data providers."""

from .provider import TokenProviderClient, RateLimiter
