from fastapi import APIRouter

from app.api.v1.endpoints import messages, sessions

# Create the main API router
router = APIRouter()

# Admission, status and membership routes live at the API root (/join, /status, ...)
router.include_router(sessions.router, tags=["sessions"])
router.include_router(messages.router, tags=["messages"])
