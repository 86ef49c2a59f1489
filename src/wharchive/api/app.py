"""ASGI entrypoint: ``uvicorn wharchive.api.app:app``."""

from wharchive.api.factory import create_app

app = create_app()
