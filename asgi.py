"""
asgi.py -- Application assembly for Staffwise.

This is the ONLY file that mounts both api/ and web/. It joins the two layers
into a single ASGI app. api/main.py knows nothing about web/; web/routes.py
only borrows the shared rate limiter from api/limiter.py.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

# Mount the web router here, not in api/main.py.
app.include_router(web_router, tags=["Web"])
