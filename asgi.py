"""
asgi.py -- Application assembly for UserDir.

The ASGI entry point servers import. api/main.py builds the app; keeping this
module separate lets deployment config point at a stable path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
