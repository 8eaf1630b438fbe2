import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Query

from chatflow.chat.store import RemoteStore
from chatflow.core.dependencies import get_store, get_viewer_id

from .schemas import UserSearchResponseModel


logger = logging.getLogger(__name__)
router = APIRouter()

SEARCH_LIMIT = 20
# PostgREST `or` filters use these as separators
UNSAFE_SEARCH_CHARS = re.compile(r"[,()*%\\]")


def build_search_filter(query: str) -> str:
    term = UNSAFE_SEARCH_CHARS.sub("", query.strip())
    return f"email.ilike.%{term}%,username.ilike.%{term}%"


@router.get("/search", response_model=UserSearchResponseModel, status_code=200)
async def search_users(
    q: str = Query(default="", max_length=100),
    viewer_id: str = Depends(get_viewer_id),
    store: RemoteStore = Depends(get_store),
):
    """
    Find people to start a conversation with.

    Matches the search term anywhere in a user's email or username
    (case-insensitive). Without a term, returns the first profiles found.
    The authenticated user is never included.

    **Returns**
    - `users`: Up to 20 profiles (`id`, `email`, `username`, `avatar_url`)

    **Errors**
    - 401: Unauthorized
    - 500: Database error
    """
    try:
        rows = await store.select(
            "profiles",
            or_=build_search_filter(q) if q.strip() else None,
            neq={"id": viewer_id},
            limit=SEARCH_LIMIT,
        )
    except Exception as e:
        logger.error(f"user_search_failed error={e!r}")
        raise HTTPException(status_code=500, detail="Server/Database error.")

    return {"users": rows}
