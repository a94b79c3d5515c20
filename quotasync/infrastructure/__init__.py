"""Infrastructure Layer: Contains concrete implementations and adapters.

Connects the engine to the outside world (remote store, local persistence,
configuration, logging, console) by implementing the interfaces defined in the
domain layer. Also includes the shared resilience services.
"""
