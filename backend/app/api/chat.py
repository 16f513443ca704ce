import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from app.models.chat import ChatRequest, MessageOut
from app.core.security import get_current_user
from app.core.pipeline import ChatOrchestrator, ChatServices
from app.core.sse import SSEStream

router = APIRouter(prefix="/api/chat", tags=["chat"])


def get_services(request: Request) -> ChatServices:
    return request.app.state.services


def _reject(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": code, "message": message})


def preflight(body: ChatRequest, services: ChatServices) -> None:
    """Checks that must fail with a status code, before any stream bytes are sent."""
    settings = services.settings
    if not body.message.strip():
        raise _reject("empty_message", "Message must not be blank")
    if len(body.message) > settings.max_message_chars:
        raise _reject(
            "message_too_long",
            f"Message is {len(body.message)} characters; the limit is {settings.max_message_chars}",
        )
    if body.past_messages_count > settings.max_past_messages:
        raise _reject(
            "too_many_past_messages",
            f"pastMessagesCount may be at most {settings.max_past_messages}",
        )


# ── Routes ──────────────────────────────────────────────────────────────────────

@router.post("")
async def chat(
    body: ChatRequest,
    current_user: dict = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    preflight(body, services)

    request_id = uuid.uuid4().hex
    stream = SSEStream(request_id, heartbeat_s=services.settings.sse_heartbeat_s)
    headers = stream.initialize()
    logger.bind(req_id=request_id).info(
        "[chat] user={} session={} model={} memory={} mode={} testing={}",
        current_user["id"],
        body.session_id,
        body.model,
        body.use_memory,
        body.context_mode.value,
        body.testing_mode,
    )

    orchestrator = ChatOrchestrator(services)
    services.background.spawn(
        orchestrator.run(body, current_user["id"], request_id, stream),
        name=f"chat-{request_id}",
    )

    return StreamingResponse(stream.frames(), media_type="text/event-stream", headers=headers)


@router.get("/sessions/{session_id}/messages", response_model=list[MessageOut])
async def get_messages(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
) -> list[MessageOut]:
    messages = await services.transcripts.list_for_thread(session_id, current_user["id"])
    if not messages:
        raise HTTPException(status_code=404, detail="Session not found")
    return messages
