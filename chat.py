"""Chat sessions with AI tutor replies."""
import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from db import utcnow_iso
from errors import NotFoundError, UpstreamServiceError, ValidationFailed

logger = logging.getLogger(__name__)

TUTOR_SYSTEM_PROMPT = (
    "You are a helpful AI tutor. Provide clear, educational responses to help students learn."
)
ROLES = ("user", "assistant")
HISTORY_MESSAGES = 10
MILESTONE_EVERY = 10


def new_conversation_id() -> str:
    return f"conv_{int(datetime.now(timezone.utc).timestamp() * 1000)}_{secrets.token_hex(4)}"


def fallback_reply(content: str) -> str:
    topic = " ".join((content or "").split())[:80] or "your question"
    return (
        "As an AI tutor, I'm unable to reach my knowledge service right now. "
        f'While I reconnect, try breaking "{topic}" into smaller parts: write down what you already know, '
        "identify the key terms, and note the specific step where you get stuck. "
        "Ask me again in a moment and we can work through it together."
    )


def _message(role: str, content: str, conversation_id: str) -> Dict[str, Any]:
    return {
        "role": role,
        "content": content,
        "createdAt": utcnow_iso(),
        "conversationId": conversation_id,
    }


def _session_view(session: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": session["id"],
        "userId": session["user_id"],
        "topic": session.get("topic"),
        "messages": session.get("messages") or [],
        "createdAt": session["created_at"],
        "updatedAt": session["updated_at"],
    }


def _clean_messages(raw: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    messages = []
    fields: Dict[str, str] = {}
    conversation_id = None
    for index, item in enumerate(raw):
        role = item.get("role")
        content = str(item.get("content") or "").strip()
        if role not in ROLES:
            fields[f"messages[{index}].role"] = "role must be 'user' or 'assistant'"
        if not content:
            fields[f"messages[{index}].content"] = "content is required"
        conversation_id = item.get("conversationId") or conversation_id or new_conversation_id()
        messages.append(
            {
                "role": role,
                "content": content,
                "createdAt": item.get("createdAt") or utcnow_iso(),
                "conversationId": conversation_id,
            }
        )
    if fields:
        raise ValidationFailed("Invalid chat messages", fields)
    return messages


def group_by_conversation(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Group messages by conversation id, keeping first-seen order."""
    groups: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        key = message.get("conversationId") or "default"
        group = groups.setdefault(
            key,
            {"conversationId": key, "messages": [], "startedAt": message.get("createdAt")},
        )
        group["messages"].append(dict(message))
        group["lastMessageAt"] = message.get("createdAt")
    return list(groups.values())


class ChatService:
    def __init__(self, database, ai_client, gamification=None, mailer=None):
        self.db = database
        self.ai = ai_client
        self.gamification = gamification
        self.mailer = mailer

    def _owned_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self.db.get_chat_session(session_id, user_id)
        if not session:
            raise NotFoundError("Chat session not found")
        return session

    def _tutor_reply(self, history: Sequence[Mapping[str, Any]], topic: Optional[str]) -> str:
        latest = history[-1]["content"]
        earlier = history[-HISTORY_MESSAGES:-1]
        if earlier:
            transcript = "\n".join(
                f"{'Student' if m['role'] == 'user' else 'Tutor'}: {m['content']}" for m in earlier
            )
            prompt = f"Conversation so far:\n{transcript}\n\nStudent: {latest}"
        else:
            prompt = latest
        system_prompt = TUTOR_SYSTEM_PROMPT
        if topic:
            system_prompt += f" The session topic is: {topic}."
        try:
            return self.ai.generate(prompt, system_prompt).response
        except UpstreamServiceError as exc:
            logger.warning("Tutor reply failed (%s); using fallback reply", exc.correlation_id)
            return fallback_reply(latest)

    def _append_reply(self, messages: List[Dict[str, Any]], topic: Optional[str]) -> None:
        conversation_id = messages[-1]["conversationId"]
        history = [m for m in messages if m.get("conversationId") == conversation_id]
        messages.append(_message("assistant", self._tutor_reply(history, topic), conversation_id))

    def create_session(
        self,
        user_id: str,
        topic: Optional[str] = None,
        messages: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Dict[str, Any]:
        cleaned = _clean_messages(messages or [])
        if cleaned and cleaned[-1]["role"] == "user":
            self._append_reply(cleaned, topic)
        session = self.db.create_chat_session(user_id, (topic or "").strip() or None, cleaned)

        if self.gamification is not None:
            self.gamification.record_activity(user_id)
        self._maybe_send_milestone(user_id)
        return _session_view(session)

    def _maybe_send_milestone(self, user_id: str) -> None:
        if self.mailer is None:
            return
        total = self.db.count_chat_sessions(user_id)
        if total == 0 or total % MILESTONE_EVERY:
            return
        user = self.db.get_user(user_id)
        try:
            self.mailer.send_chat_milestone_email(user["email"], user.get("username") or user["email"], total)
        except UpstreamServiceError as exc:
            logger.warning("Chat milestone email for %s not sent: %s", user_id, exc.message)

    def list_sessions(self, user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page = max(int(page), 1)
        limit = max(min(int(limit), 100), 1)
        total = self.db.count_chat_sessions(user_id)
        rows = self.db.list_chat_sessions(user_id, limit=limit, offset=(page - 1) * limit)
        return {
            "data": [_session_view(row) for row in rows],
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        }

    def get_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        return _session_view(self._owned_session(user_id, session_id))

    def update_session(self, user_id: str, session_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_session(user_id, session_id)
        updates: Dict[str, Any] = {}
        if "topic" in changes:
            updates["topic"] = changes["topic"]
        if changes.get("messages") is not None:
            updates["messages"] = _clean_messages(changes["messages"])
        if updates:
            self.db.update_chat_session(session_id, updates)
        return _session_view(self.db.get_chat_session(session_id))

    def patch_session(self, user_id: str, session_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """PATCH with a message list appends its last message; otherwise a plain update."""
        messages = changes.get("messages")
        if messages:
            last = messages[-1]
            return self.add_message(
                user_id,
                session_id,
                last.get("content"),
                last.get("role", "user"),
                last.get("conversationId"),
            )
        return self.update_session(user_id, session_id, changes)

    def delete_session(self, user_id: str, session_id: str) -> None:
        self._owned_session(user_id, session_id)
        self.db.delete_chat_session(session_id)

    def add_message(
        self,
        user_id: str,
        session_id: str,
        content: Optional[str],
        role: str = "user",
        conversation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = self._owned_session(user_id, session_id)
        content = str(content or "").strip()
        fields = {}
        if not content:
            fields["content"] = "content is required"
        if role not in ROLES:
            fields["role"] = "role must be 'user' or 'assistant'"
        if fields:
            raise ValidationFailed("Invalid chat message", fields)

        messages = list(session.get("messages") or [])
        messages.append(_message(role, content, conversation_id or new_conversation_id()))
        if role == "user":
            self._append_reply(messages, session.get("topic"))
        self.db.update_chat_session(session_id, {"messages": messages})
        return _session_view(self.db.get_chat_session(session_id))

    def grouped_messages(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self._owned_session(user_id, session_id)
        return {
            "sessionId": session["id"],
            "topic": session.get("topic"),
            "conversations": group_by_conversation(session.get("messages") or []),
        }

    def all_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        conversations = []
        for session in self.db.list_chat_sessions(user_id):
            for group in group_by_conversation(session.get("messages") or []):
                conversations.append({"sessionId": session["id"], "topic": session.get("topic"), **group})
        conversations.sort(key=lambda c: c.get("lastMessageAt") or "", reverse=True)
        return conversations

    def session_stats(self, user_id: str) -> Dict[str, int]:
        since = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()
        return {
            "totalSessions": self.db.count_chat_sessions(user_id),
            "recentSessions": self.db.count_chat_sessions(user_id, since=since),
        }
