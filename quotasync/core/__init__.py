"""Core Application Layer: the quota cache, validator, batch processor and
sync engine.

Connects the domain layer with infrastructure adapters through interfaces.
"""
