"""Middleware components for the HomeDeck bridge."""
from homedeck.middleware.rate_limiter import RateLimiterMiddleware

__all__ = ["RateLimiterMiddleware"]
