"""HomeDeck - smart-home dashboard client and Home Assistant bridge."""

__version__ = "1.0.0"
