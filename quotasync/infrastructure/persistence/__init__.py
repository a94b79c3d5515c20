"""Local State Persistence.

Provides concrete StateStore implementations backed by diskcache or by a
JSON file on disk.
Bounded Context: Local State
"""
