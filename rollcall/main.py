from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rollcall.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from rollcall.errors import RollcallError, rollcall_error_handler
from rollcall.logging_config import configure_logging
from rollcall.routers import attendance, auth, core, courses, sessions
from rollcall_store.db import create_tables


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging()
    create_tables()
    yield


app = FastAPI(title="Rollcall API", lifespan=lifespan)

# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.add_exception_handler(RollcallError, rollcall_error_handler)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(courses.router)
app.include_router(sessions.router)
app.include_router(attendance.router)
