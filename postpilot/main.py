import logging

from fastapi import FastAPI

from postpilot.config import settings
from postpilot.deps import init_db
from postpilot.errors import register_exception_handlers
from postpilot.services import scheduler

# Routers
from postpilot.routers import analytics, auth_linkedin, cron, drafts, linkedin_publish, scheduler_api, user

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title="PostPilot API", version="0.6.0")
register_exception_handlers(app)

@app.on_event("startup")
def _startup():
    init_db()
    if settings.scheduler_enabled:
        scheduler.start_scheduler()

@app.on_event("shutdown")
def _shutdown():
    scheduler.stop_scheduler()

@app.get("/")
def root():
    return {"message": "PostPilot API is running!"}

# Mount routes
app.include_router(auth_linkedin.router)      # /linkedin/auth, /linkedin/callback, /linkedin/status
app.include_router(linkedin_publish.router)   # /linkedin/post, /publish
app.include_router(drafts.router)             # /drafts/*
app.include_router(analytics.router)          # /analytics/*
app.include_router(cron.router)               # /cron/*
app.include_router(user.router)               # /user/*
app.include_router(scheduler_api.router)      # /scheduler/*
