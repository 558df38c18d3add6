# hydrotrack API Main Entry Point
import logging
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from .settings import settings
from .routers.ready import router as ready_router
from .routers.users import router as users_router
from .routers.jobs import router as jobs_router
from .routers.entries import router as entries_router
from .routers.goals import router as goals_router
from .routers.worker import router as worker_router

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("hydrotrack")

# Rate limiter (per-IP)
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

app = FastAPI(title="hydrotrack API", version="0.1.0")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ready_router, prefix="/api", tags=["ready"])
app.include_router(users_router, prefix="/api", tags=["settings"])
app.include_router(jobs_router, prefix="/api", tags=["jobs"])
app.include_router(entries_router, prefix="/api", tags=["entries"])
app.include_router(goals_router, prefix="/api", tags=["goals"])
app.include_router(worker_router, prefix="/api", tags=["worker"])

logger.info(f"hydrotrack API ready (ai_mode={settings.ai_mode})")
