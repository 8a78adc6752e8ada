"""API route modules."""

from visibility_engine.api.routes import credits, health, schedules, visibility

__all__ = ["credits", "health", "schedules", "visibility"]
