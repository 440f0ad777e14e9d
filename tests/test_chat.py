import pytest

from chat import ChatService, fallback_reply, group_by_conversation
from errors import NotFoundError, UpstreamServiceError, ValidationFailed
from fakes import FakeAI, RecordingMailer


@pytest.fixture
def owner(make_user):
    return make_user(username="learner")


def _service(database, gamification, ai=None, mailer=None):
    return ChatService(database, ai or FakeAI(), gamification, mailer)


def test_session_with_user_message_gets_tutor_reply(database, gamification, owner):
    ai = FakeAI(default="Photosynthesis turns light into chemical energy.")
    service = _service(database, gamification, ai=ai)

    session = service.create_session(owner["id"], "Biology", [{"role": "user", "content": "What is photosynthesis?"}])

    roles = [m["role"] for m in session["messages"]]
    assert roles == ["user", "assistant"]
    assert session["messages"][1]["content"] == "Photosynthesis turns light into chemical energy."
    assert session["messages"][0]["conversationId"] == session["messages"][1]["conversationId"]
    assert "Biology" in ai.calls[0]["system_prompt"]
    assert database.get_user(owner["id"])["streak_count"] == 1


def test_empty_session_does_not_call_ai(database, gamification, owner):
    ai = FakeAI()
    session = _service(database, gamification, ai=ai).create_session(owner["id"], "Empty")
    assert session["messages"] == []
    assert ai.calls == []


def test_tutor_failure_uses_fallback_reply(database, gamification, owner):
    ai = FakeAI(replies=[UpstreamServiceError("AI service temporarily unavailable")])
    service = _service(database, gamification, ai=ai)

    session = service.create_session(owner["id"], None, [{"role": "user", "content": "Explain fractions"}])

    reply = session["messages"][-1]["content"]
    assert reply.startswith("As an AI tutor")
    assert reply == fallback_reply("Explain fractions")


def test_invalid_messages_report_field_paths(database, gamification, owner):
    service = _service(database, gamification)
    with pytest.raises(ValidationFailed) as info:
        service.create_session(owner["id"], None, [{"role": "robot", "content": "hi"}, {"role": "user", "content": " "}])
    assert set(info.value.fields) == {"messages[0].role", "messages[1].content"}


def test_add_message_appends_reply_with_history(database, gamification, owner):
    ai = FakeAI(replies=["First answer.", "Second answer."])
    service = _service(database, gamification, ai=ai)
    session = service.create_session(owner["id"], "Math", [{"role": "user", "content": "What is 2 + 2?", "conversationId": "c1"}])

    updated = service.add_message(owner["id"], session["id"], "And 3 + 3?", conversation_id="c1")

    assert [m["content"] for m in updated["messages"]] == ["What is 2 + 2?", "First answer.", "And 3 + 3?", "Second answer."]
    assert "Student: What is 2 + 2?" in ai.calls[1]["message"]
    assert "Tutor: First answer." in ai.calls[1]["message"]


def test_assistant_message_is_stored_without_reply(database, gamification, owner):
    ai = FakeAI()
    service = _service(database, gamification, ai=ai)
    session = service.create_session(owner["id"])

    updated = service.add_message(owner["id"], session["id"], "Noted.", role="assistant")
    assert [m["role"] for m in updated["messages"]] == ["assistant"]
    assert ai.calls == []


def test_add_message_requires_content(database, gamification, owner):
    service = _service(database, gamification)
    session = service.create_session(owner["id"])
    with pytest.raises(ValidationFailed) as info:
        service.add_message(owner["id"], session["id"], "   ")
    assert "content" in info.value.fields


def test_sessions_are_private(database, gamification, owner, make_user):
    service = _service(database, gamification)
    session = service.create_session(owner["id"], "Mine")
    intruder = make_user()

    with pytest.raises(NotFoundError):
        service.get_session(intruder["id"], session["id"])
    with pytest.raises(NotFoundError):
        service.add_message(intruder["id"], session["id"], "hello")
    with pytest.raises(NotFoundError):
        service.delete_session(intruder["id"], session["id"])


def test_list_sessions_paginates(database, gamification, owner):
    service = _service(database, gamification)
    for i in range(3):
        service.create_session(owner["id"], f"Topic {i}")

    page = service.list_sessions(owner["id"], page=2, limit=2)
    assert page["total"] == 3
    assert page["totalPages"] == 2
    assert len(page["data"]) == 1
    assert service.session_stats(owner["id"]) == {"totalSessions": 3, "recentSessions": 3}


def test_update_and_delete_session(database, gamification, owner):
    service = _service(database, gamification)
    session = service.create_session(owner["id"], "Old")

    updated = service.update_session(owner["id"], session["id"], {"topic": "New"})
    assert updated["topic"] == "New"

    service.delete_session(owner["id"], session["id"])
    with pytest.raises(NotFoundError):
        service.get_session(owner["id"], session["id"])


def test_patch_with_messages_appends_last_message(database, gamification, owner):
    ai = FakeAI(default="Reply.")
    service = _service(database, gamification, ai=ai)
    session = service.create_session(owner["id"])

    patched = service.patch_session(
        owner["id"], session["id"], {"messages": [{"role": "user", "content": "ignored"}, {"role": "user", "content": "kept"}]}
    )
    assert [m["content"] for m in patched["messages"]] == ["kept", "Reply."]


def test_milestone_email_every_tenth_session(database, gamification, owner):
    mailer = RecordingMailer()
    service = _service(database, gamification, mailer=mailer)

    for _ in range(9):
        service.create_session(owner["id"])
    assert mailer.sent == []

    service.create_session(owner["id"])
    assert mailer.sent == [("chat_milestone", owner["email"], 10)]


def test_milestone_email_failure_is_tolerated(database, gamification, owner):
    service = _service(database, gamification, mailer=RecordingMailer(fail=True))
    for _ in range(10):
        service.create_session(owner["id"])
    assert service.session_stats(owner["id"])["totalSessions"] == 10


def test_group_by_conversation_keeps_first_seen_order():
    messages = [
        {"role": "user", "content": "a", "conversationId": "x", "createdAt": "1"},
        {"role": "user", "content": "b", "conversationId": "y", "createdAt": "2"},
        {"role": "assistant", "content": "c", "conversationId": "x", "createdAt": "3"},
        {"role": "user", "content": "d", "createdAt": "4"},
    ]
    groups = group_by_conversation(messages)

    assert [g["conversationId"] for g in groups] == ["x", "y", "default"]
    assert [m["content"] for m in groups[0]["messages"]] == ["a", "c"]
    assert groups[0]["startedAt"] == "1"
    assert groups[0]["lastMessageAt"] == "3"


def test_all_conversations_spans_sessions(database, gamification, owner):
    service = _service(database, gamification)
    service.create_session(owner["id"], "One", [{"role": "user", "content": "hi", "conversationId": "c1"}])
    service.create_session(owner["id"], "Two", [{"role": "user", "content": "yo", "conversationId": "c2"}])

    conversations = service.all_conversations(owner["id"])
    assert {c["conversationId"] for c in conversations} == {"c1", "c2"}
    assert all(len(c["messages"]) == 2 for c in conversations)
