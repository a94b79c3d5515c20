"""quotasync: local usage-quota cache and batched synchronization engine."""

__version__ = "0.1.0"
