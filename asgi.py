"""
asgi.py -- Application assembly for iCloud Sentinel.

This is the ONLY file that mounts both api/ and web/. api/main.py knows
nothing about the pages; web/routes.py shares only the rate limiter
(api/limiter.py) with the API so sign-in and import count against one store.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
