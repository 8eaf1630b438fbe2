from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat import routers as chat_router
from .users import routers as users_router

from .chat.conversation_cache import DEFAULT_POLL_SECONDS
from .chat.session import SessionRegistry
from .core.middleware import logging_middleware
from .core.supabase_client import create_store
from .utils.env_helper import env_list
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own store before startup
    if getattr(app.state, "store", None) is None:
        app.state.store = await create_store()
    app.state.sessions = SessionRegistry(app.state.store, DEFAULT_POLL_SECONDS)
    app.state.sessions.start_sweeper()
    try:
        yield
    finally:
        await app.state.sessions.close()


app = FastAPI(lifespan=lifespan)
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])
app.include_router(users_router.router, prefix="/users", tags=["Users"])


origins = env_list(
    "CORS_ORIGINS",
    default=[
        "http://localhost:5173",
        "http://localhost:8080",
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(logging_middleware)

