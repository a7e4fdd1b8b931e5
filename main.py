"""ASGI entry point for the dashboard API."""
from dotenv import load_dotenv

load_dotenv()

from apps.api import create_app  # noqa: E402

app = create_app()
