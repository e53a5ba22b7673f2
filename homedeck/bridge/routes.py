"""Chat history API routes."""
import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from homedeck.bridge.database import ChatDatabase, get_database
from homedeck.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])
shared_router = APIRouter(prefix="/api/shared", tags=["chat"])

TITLE_MAX_WORDS = 6
DEFAULT_TITLE = "New Chat"


class CreateThreadRequest(BaseModel):
    title: str = DEFAULT_TITLE
    agent_id: str = "default"


class UpdateThreadRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    pinned: Optional[bool] = None
    archived: Optional[bool] = None
    tags: Optional[list[str]] = None
    folder: Optional[str] = None
    enabled_tools: Optional[list[str]] = None
    model: Optional[str] = None
    agent_style: Optional[str] = None


class CreateMessageRequest(BaseModel):
    thread_id: str = Field(min_length=1)
    role: Literal["user", "assistant"]
    content: str


class HistoryTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class SuggestTitleRequest(BaseModel):
    first_message: Optional[str] = Field(default=None, alias="firstMessage", max_length=10000)
    conversation_history: Optional[list[HistoryTurn]] = Field(
        default=None, alias="conversationHistory", max_length=10
    )


class ShareRequest(BaseModel):
    expires_in_days: Optional[float] = Field(default=None, alias="expiresInDays", gt=0, le=3650)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def suggest_title(text: str) -> str:
    """First line of `text`, at most six words, without trailing punctuation."""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return DEFAULT_TITLE
    title = " ".join(lines[0].split()[:TITLE_MAX_WORDS]).rstrip(".,;:!?-")
    return title.strip() or DEFAULT_TITLE


@router.get("/threads")
async def list_threads(db: ChatDatabase = Depends(get_database)):
    return {"ok": True, "threads": db.list_threads()}


@router.post("/threads")
async def create_thread(request: CreateThreadRequest, db: ChatDatabase = Depends(get_database)):
    thread = db.create_thread(title=request.title, agent_id=request.agent_id)
    logger.info(f"Created thread {thread['id']}")
    return {"ok": True, "thread": thread}


@router.patch("/threads/{thread_id}")
async def update_thread(
    thread_id: str,
    request: UpdateThreadRequest,
    db: ChatDatabase = Depends(get_database),
):
    thread = db.update_thread(thread_id, **request.model_dump(exclude_unset=True))
    if thread is None:
        return error_response(404, "Thread not found")
    return {"ok": True, "thread": thread}


@router.delete("/threads/{thread_id}")
async def delete_thread(thread_id: str, db: ChatDatabase = Depends(get_database)):
    if not db.delete_thread(thread_id):
        return error_response(404, "Thread not found")
    logger.info(f"Deleted thread {thread_id}")
    return {"ok": True}


@router.post("/threads/{thread_id}/suggest-title")
async def suggest_thread_title(thread_id: str, request: SuggestTitleRequest):
    if request.conversation_history:
        first_user = next(
            (turn.content for turn in request.conversation_history if turn.role == "user"), ""
        )
        source = first_user or request.first_message or ""
    elif request.first_message:
        source = request.first_message
    else:
        return error_response(400, "Either firstMessage or conversationHistory is required")
    return {"ok": True, "title": suggest_title(source)}


@router.post("/threads/{thread_id}/share")
async def share_thread(
    thread_id: str,
    request: ShareRequest,
    http_request: Request,
    db: ChatDatabase = Depends(get_database),
):
    if db.get_thread(thread_id) is None:
        return error_response(404, "Thread not found")
    share = db.create_share(thread_id, expires_in_days=request.expires_in_days)
    origin = (
        get_settings().share_base_url
        or http_request.headers.get("origin")
        or str(http_request.base_url)
    ).rstrip("/")
    return {
        "ok": True,
        "shareUrl": f"{origin}/shared/{share['share_token']}",
        "token": share["share_token"],
    }


@router.delete("/threads/{thread_id}/share")
async def unshare_thread(thread_id: str, db: ChatDatabase = Depends(get_database)):
    removed = db.delete_shares(thread_id)
    logger.info(f"Removed {removed} share link(s) for thread {thread_id}")
    return {"ok": True}


@router.get("/messages")
async def list_messages(thread_id: Optional[str] = None, db: ChatDatabase = Depends(get_database)):
    if not thread_id:
        return error_response(400, "thread_id required")
    return {"ok": True, "messages": db.list_messages(thread_id)}


@router.post("/messages")
async def create_message(request: CreateMessageRequest, db: ChatDatabase = Depends(get_database)):
    if db.get_thread(request.thread_id) is None:
        return error_response(404, "Thread not found")
    message = db.create_message(request.thread_id, request.role, request.content)
    return {"ok": True, "message": message}


@shared_router.get("/{token}")
async def get_shared_thread(token: str, db: ChatDatabase = Depends(get_database)):
    share = db.get_share(token)
    if share is None:
        return error_response(404, "Shared conversation not found")
    expires_at = share.get("expires_at")
    if expires_at and datetime.fromisoformat(expires_at) < datetime.now(timezone.utc):
        return error_response(410, "This shared conversation has expired")

    thread = db.get_thread(share["thread_id"], include_deleted=True)
    if thread is None:
        return error_response(404, "Thread not found")

    db.record_share_view(token)
    return {
        "ok": True,
        "thread": {
            "title": thread["title"],
            "messages": db.list_messages(thread["id"]),
            "created_at": thread["created_at"],
        },
    }
