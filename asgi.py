"""
asgi.py -- Application assembly for tokenward.

Settings are read from the environment (and .env) here, at import time, so a
misconfigured deployment fails before the server binds a port: load_settings()
raises ConfigurationError listing every problem.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
