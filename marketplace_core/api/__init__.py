"""HTTP API for checkout, payment notifications and scheduled job triggers."""
from .main import create_app

__all__ = ["create_app"]
