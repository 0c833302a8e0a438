"""ASGI entrypoint for the race photos API."""

from race_photos.api.app import create_app
from race_photos.containers import build_container

app = create_app(build_container())
