"""
FastAPI/ASGI application entrypoint.

Run with: uvicorn backend_relgraph.api_server.app:app --host 0.0.0.0 --port 8001
"""

from backend_relgraph.api_server.server import app, create_app

__all__ = ["app", "create_app"]
