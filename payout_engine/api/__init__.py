"""FastAPI application and routes."""
from .main import create_app
from .routes import Services

__all__ = ["create_app", "Services"]
