"""Core module for configuration, persistence and observability."""
