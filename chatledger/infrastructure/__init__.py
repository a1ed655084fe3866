"""Infrastructure layer - wiring of adapters into the application."""

from .app_factory import AppFactory, app_factory

__all__ = [
    "AppFactory",
    "app_factory",
]
