"""Redis-backed HTTP rate limiting service with sliding window strategies."""

__version__ = "1.0.0"