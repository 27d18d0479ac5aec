"""Core building blocks: configuration, data models, errors and logging."""
