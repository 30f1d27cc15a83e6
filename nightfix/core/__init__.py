"""Core models, configuration, exceptions and wiring."""
