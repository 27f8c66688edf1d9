"""
asgi.py -- ASGI entry point for Zorem.

Settings are read from the environment here, at import time, and nowhere
else: importing api.main alone never touches the environment, which lets the
test suite build apps from explicit Settings.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
