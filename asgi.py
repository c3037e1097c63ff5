"""
asgi.py -- Application assembly for the auth service.

This is the ONLY file that imports from both api/ and web/. It joins the JSON
API and the transfer landing page into a single ASGI app without coupling the
two layers to each other.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

# Mount the web router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
