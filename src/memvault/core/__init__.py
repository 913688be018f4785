"""Core configuration, domain models, errors and providers."""
