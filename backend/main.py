from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import logging

from config import CORS_ORIGINS, LOG_LEVEL, UPLOAD_DIR
from errors import register_exception_handlers
from realtime import RoomHub
from storage import ensure_upload_dir
from auth.routes import router as auth_router
from routes.activity import router as activity_router
from routes.chats import router as chats_router
from routes.comments import router as comments_router
from routes.events import router as events_router
from routes.notifications import router as notifications_router
from routes.realtime import router as realtime_router
from routes.subtasks import router as subtasks_router
from routes.tasks import router as tasks_router
from routes.teams import router as teams_router
from routes.users import router as users_router

# Configure logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# Tables are created by migrations in production; tests create them explicitly

app = FastAPI(
    title="Team Collaboration API",
    description="Tasks, teams, calendar events, chats and notifications with real-time updates",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# One hub per application; routes reach it through get_hub
app.state.hub = RoomHub()

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(teams_router)
app.include_router(tasks_router)
app.include_router(subtasks_router)
app.include_router(comments_router)
app.include_router(events_router)
app.include_router(chats_router)
app.include_router(notifications_router)
app.include_router(activity_router)
app.include_router(realtime_router)

# Ensure upload directory exists (skip when it cannot be created)
try:
    ensure_upload_dir()
    # Mount static files for serving uploads
    app.mount("/uploads", StaticFiles(directory=str(UPLOAD_DIR)), name="uploads")
except (OSError, PermissionError) as e:
    logger.warning(f"Could not create upload directory: {e}. File uploads will not work.")


@app.on_event("startup")
async def start_realtime_hub():
    app.state.hub.start()


@app.on_event("shutdown")
async def stop_realtime_hub():
    app.state.hub.stop()


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}
