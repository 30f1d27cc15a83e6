"""Durable session state: JSON files or PostgreSQL."""
