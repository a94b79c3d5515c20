"""Domain Event definitions.

Represents significant occurrences within the quota and sync domain that the
UI layer might react to, plus the dispatcher that delivers them.
"""
