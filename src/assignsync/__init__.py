"""Rate-limited, cache-aware sync of LMS assignments into a database Sink."""

__version__ = "0.1.0"
