"""Domain models: value objects, entities and tagged errors."""
