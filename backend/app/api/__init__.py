"""API router exports."""
from app.api.chat import router as chat
from app.api.tools import router as tools
