"""
asgi.py -- ASGI entry point for LibraryAuth.

Business routers (books, members, loans, reports) live outside this package
and are included next to the auth API here, so api/ never imports them; they
depend only on auth.dependencies for the caller's identity.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
