"""Platform factory FastAPI application."""

from .main import create_app
from .settings import FactorySettings

__all__ = ["create_app", "FactorySettings"]
