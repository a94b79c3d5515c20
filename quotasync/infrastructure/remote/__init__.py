"""Remote Store Adapters.

HTTP client for the authoritative backend and an in-memory authoritative
store for offline development and tests.
"""
