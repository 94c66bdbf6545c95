from typing import List

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import StreamingResponse

from chat_engine.api.deps import get_chat_manager, get_event_broker
from chat_engine.api.events import EventBroker
from chat_engine.core.exceptions import SessionNotFoundError
from chat_engine.schemas.chat_schema import (
    ChatSession,
    Message,
    ResendResponse,
    SendMessageRequest,
    SessionCreate,
    SessionPreview,
    SessionRename,
    SessionSwitchConfig,
)
from chat_engine.services.chat_manager import ChatManager
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.api.sessions")

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ------ Sessions -----
@router.get("", response_model=List[SessionPreview])
async def list_sessions(chat: ChatManager = Depends(get_chat_manager)):
    return await chat.get_session_previews()


@router.post("", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
async def create_session(body: SessionCreate, chat: ChatManager = Depends(get_chat_manager)):
    return await chat.create_session(config_id=body.config_id, title=body.title)


@router.get("/{session_id}", response_model=ChatSession)
async def get_session(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    session = await chat.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


@router.patch("/{session_id}", response_model=ChatSession)
async def rename_session(session_id: str, body: SessionRename, chat: ChatManager = Depends(get_chat_manager)):
    return await chat.update_session_title(session_id, body.title)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    await chat.delete_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{session_id}/config", response_model=ChatSession)
async def switch_config(session_id: str, body: SessionSwitchConfig, chat: ChatManager = Depends(get_chat_manager)):
    return await chat.switch_session_config(session_id, body.config_id)


# ------ Messages -----
@router.get("/{session_id}/messages", response_model=List[Message])
async def get_messages(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    return await chat.get_messages(session_id)


@router.post("/{session_id}/messages", response_model=Message, status_code=status.HTTP_202_ACCEPTED)
async def send_message(session_id: str, body: SendMessageRequest, chat: ChatManager = Depends(get_chat_manager)):
    logger.info("Message received", extra={"session_id": session_id, "content_length": len(body.content)})
    return await chat.send_message(session_id, body.content, images=body.images, image_params=body.image_params)


@router.delete("/{session_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(session_id: str, message_id: str, chat: ChatManager = Depends(get_chat_manager)):
    await chat.delete_message(session_id, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{session_id}/messages/{message_id}/resend", response_model=ResendResponse)
async def resend_message(session_id: str, message_id: str, chat: ChatManager = Depends(get_chat_manager)):
    assistant_id, messages = await chat.resend_message(session_id, message_id)
    return ResendResponse(assistant_message_id=assistant_id, messages=messages)


@router.post("/{session_id}/regenerate", response_model=Message)
async def regenerate(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    return await chat.regenerate_last_response(session_id)


# ------ Streaming -----
@router.post("/{session_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_stream(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    chat.cancel_stream(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{session_id}/status")
async def stream_status(session_id: str, chat: ChatManager = Depends(get_chat_manager)):
    return {"session_id": session_id, "streaming": chat.is_streaming(session_id)}


@router.get("/{session_id}/events")
async def session_events(
    session_id: str,
    chat: ChatManager = Depends(get_chat_manager),
    broker: EventBroker = Depends(get_event_broker),
):
    if await chat.get_session(session_id) is None:
        raise SessionNotFoundError(session_id)
    return StreamingResponse(
        broker.stream(session_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
