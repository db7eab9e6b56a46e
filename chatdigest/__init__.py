"""Chat message archive with scheduled AI digests."""

__version__ = "1.0.0"
