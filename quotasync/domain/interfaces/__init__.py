"""Domain Interfaces (Ports):

Defines the contracts (Abstract Base Classes) that infrastructure adapters
must implement. The core engine depends on these interfaces, not on concrete
remote or persistence implementations.
"""
