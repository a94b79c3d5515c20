"""Domain Layer: models, errors, events and ports of the quota/sync engine."""
