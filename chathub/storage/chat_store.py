# chathub/storage/chat_store.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update

from chathub.storage.database import session_scope
from chathub.storage.models import Conversation, Message, MessageChunk, utcnow

log = logging.getLogger("chathub.store")

DEFAULT_TITLE = "New Chat"


def conversation_to_dict(c: Conversation) -> Dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "title": c.title,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


def message_to_dict(m: Message, pending: Optional[List[str]] = None) -> Dict[str, Any]:
    text = m.text or ""
    if pending:
        text += "".join(pending)
    usage = None
    if m.total_tokens is not None:
        usage = {
            "prompt_tokens": m.prompt_tokens,
            "completion_tokens": m.completion_tokens,
            "total_tokens": m.total_tokens,
        }
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "sender": m.sender,
        "text": text,
        "model": m.model,
        "model_name": m.model_name,
        "status": m.status,
        "error": m.error,
        "usage": usage,
        "created_at": m.created_at.isoformat() if m.created_at else None,
        "updated_at": m.updated_at.isoformat() if m.updated_at else None,
    }


# Conversations

def create_conversation(owner_id: str, title: Optional[str] = None) -> Conversation:
    conv = Conversation(id=uuid.uuid4().hex, user_id=owner_id, title=(title or "").strip() or DEFAULT_TITLE)
    with session_scope() as s:
        s.add(conv)
    return conv


def get_conversation(conversation_id: str, owner_id: str) -> Optional[Conversation]:
    # Ownership is part of the query so foreign ids look exactly like missing ones
    with session_scope() as s:
        return s.scalars(
            select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == owner_id)
        ).first()


def list_conversations(owner_id: str, limit: int = 20) -> List[Conversation]:
    with session_scope() as s:
        return list(
            s.scalars(
                select(Conversation)
                .where(Conversation.user_id == owner_id)
                .order_by(Conversation.updated_at.desc())
                .limit(limit)
            )
        )


def finalize_conversation_touch(conversation_id: str) -> None:
    with session_scope() as s:
        s.execute(update(Conversation).where(Conversation.id == conversation_id).values(updated_at=utcnow()))


def delete_conversation(conversation_id: str, owner_id: str) -> bool:
    """Delete a conversation and everything under it in one transaction.

    Returns False when the conversation does not exist or belongs to someone else.
    """
    with session_scope() as s:
        conv = s.scalars(
            select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == owner_id)
        ).first()
        if conv is None:
            return False
        msg_ids = select(Message.id).where(Message.conversation_id == conversation_id)
        s.execute(delete(MessageChunk).where(MessageChunk.message_id.in_(msg_ids)))
        s.execute(delete(Message).where(Message.conversation_id == conversation_id))
        s.execute(delete(Conversation).where(Conversation.id == conv.id))
    log.info({"event": "conversation.deleted", "conversation_id": conversation_id})
    return True


# Messages

def _next_seq(s, conversation_id: str) -> int:
    s.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_seq=Conversation.last_seq + 1, updated_at=utcnow())
    )
    return int(s.scalar(select(Conversation.last_seq).where(Conversation.id == conversation_id)) or 0)


def add_user_message(conversation_id: str, text: str, owner_id: Optional[str] = None) -> Optional[Message]:
    """Store a finished user turn. With ``owner_id`` set, None if the caller does not own the conversation."""
    with session_scope() as s:
        if owner_id is not None:
            owned = s.scalar(
                select(Conversation.id).where(Conversation.id == conversation_id, Conversation.user_id == owner_id)
            )
            if owned is None:
                return None
        msg = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            seq=_next_seq(s, conversation_id),
            sender="user",
            text=text,
            status="done",
        )
        s.add(msg)
    return msg


def create_model_message(conversation_id: str, model_id: str, display_name: Optional[str] = None,
                         prompt: Optional[str] = None) -> Message:
    with session_scope() as s:
        msg = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            seq=_next_seq(s, conversation_id),
            sender="model",
            prompt=prompt,
            text="",
            model=model_id,
            model_name=display_name or model_id,
            status="streaming",
        )
        s.add(msg)
    return msg


def append_to_model_message(message_id: str, chunk: str) -> None:
    """Append one streamed fragment: a single INSERT, never a read-modify-write."""
    if not chunk:
        return
    with session_scope() as s:
        s.add(MessageChunk(message_id=message_id, text=chunk))
        s.execute(update(Message).where(Message.id == message_id).values(updated_at=utcnow()))


def _drain_chunks(s, message_id: str) -> str:
    rows = s.scalars(
        select(MessageChunk.text).where(MessageChunk.message_id == message_id).order_by(MessageChunk.id.asc())
    ).all()
    if rows:
        s.execute(delete(MessageChunk).where(MessageChunk.message_id == message_id))
    return "".join(rows)


def finalize_model_message(message_id: str) -> Optional[Message]:
    """Merge pending chunks into ``text`` and mark the message done.

    A second call merges an empty chunk list and leaves ``text`` unchanged.
    An errored message is never moved back to done.
    """
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            return None
        if msg.status == "error":
            log.warning({"event": "finalize.skipped", "message_id": message_id, "status": msg.status})
            return msg
        msg.text = (msg.text or "") + _drain_chunks(s, message_id)
        msg.status = "done"
        msg.updated_at = utcnow()
    return msg


def record_usage(message_id: str, usage: Dict[str, int]) -> None:
    prompt = usage.get("prompt_tokens")
    completion = usage.get("completion_tokens")
    total = usage.get("total_tokens")
    if total is None:
        total = (prompt or 0) + (completion or 0)
    with session_scope() as s:
        s.execute(
            update(Message)
            .where(Message.id == message_id)
            .values(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
        )


def mark_model_message_error(message_id: str, error_text: str, marker: Optional[str] = None) -> Optional[Message]:
    """Record a failed generation.

    Without ``marker`` pending chunks stay in place for inspection. With it, the
    chunks and the marker are merged into ``text`` and the chunk list is cleared.
    A finished message is left alone.
    """
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            return None
        if msg.status == "done":
            log.warning({"event": "mark_error.skipped", "message_id": message_id, "status": msg.status})
            return msg
        if marker:
            msg.text = (msg.text or "") + _drain_chunks(s, message_id) + marker
        msg.status = "error"
        msg.error = error_text
        msg.updated_at = utcnow()
    return msg


def get_model_message(message_id: str) -> Optional[Dict[str, Any]]:
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            return None
        pending = s.scalars(
            select(MessageChunk.text).where(MessageChunk.message_id == message_id).order_by(MessageChunk.id.asc())
        ).all()
        out = message_to_dict(msg)
        out["chunks"] = list(pending)
        return out


def get_messages(conversation_id: str, owner_id: str, limit: int = 50) -> Optional[List[Dict[str, Any]]]:
    """Most recent ``limit`` messages in chronological order, or None if not owned.

    Messages that still hold unflushed chunks (a stream that never reached
    finalize) are merged at read time.
    """
    with session_scope() as s:
        owned = s.scalar(
            select(Conversation.id).where(Conversation.id == conversation_id, Conversation.user_id == owner_id)
        )
        if owned is None:
            return None
        msgs = list(
            s.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.seq.desc())
                .limit(limit)
            )
        )
        msgs.reverse()
        pending: Dict[str, List[str]] = {}
        ids = [m.id for m in msgs if m.sender == "model"]
        if ids:
            rows = s.execute(
                select(MessageChunk.message_id, MessageChunk.text)
                .where(MessageChunk.message_id.in_(ids))
                .order_by(MessageChunk.id.asc())
            )
            for mid, text in rows:
                pending.setdefault(mid, []).append(text)
        return [message_to_dict(m, pending.get(m.id)) for m in msgs]


def get_history_for_provider(conversation_id: str, limit: int = 20) -> List[Dict[str, str]]:
    """Finished turns as ``{role, content}`` pairs for hosted chat APIs."""
    with session_scope() as s:
        msgs = list(
            s.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id, Message.status == "done")
                .order_by(Message.seq.desc())
                .limit(limit)
            )
        )
    msgs.reverse()
    return [
        {"role": "user" if m.sender == "user" else "assistant", "content": m.text or ""}
        for m in msgs
        if m.text
    ]
