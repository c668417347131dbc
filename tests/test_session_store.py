import pytest

from conftest import USER_ID
from voice_lab.models import GREETING_ID, ConversationSession, Role, Utterance, generate_timestamp_id
from voice_lab.session_store import VoiceSessionStore


def make_session(session_id, user_id=USER_ID, created_at=1, modality="voice", texts=("hi",)):
    messages = [Utterance.create(Role.USER, text) for text in texts]
    return ConversationSession(
        id=session_id, user_id=user_id, title="Saved chat",
        messages=messages, created_at=created_at, modality=modality,
    )


async def test_load_lists_only_this_users_voice_sessions(repository, store):
    await repository.insert_session(make_session("a", created_at=1))
    await repository.insert_session(make_session("b", created_at=2))
    await repository.insert_session(make_session("c", created_at=3, modality="text"))
    await repository.insert_session(make_session("d", user_id="someone-else"))

    await store.load()

    assert [s.id for s in store.sessions] == ["b", "a"]
    assert store.is_draft


async def test_load_resumes_requested_session(repository, store):
    await repository.insert_session(make_session("a", texts=("what is light",)))

    await store.load("a")

    assert store.active_id == "a"
    assert not store.is_draft
    assert [m.text for m in store.messages] == ["what is light"]


@pytest.mark.parametrize("session", [
    make_session("x", user_id="someone-else"),
    make_session("x", modality="text"),
])
async def test_load_rejects_foreign_or_text_session(repository, store, session):
    await repository.insert_session(session)

    await store.load("x")

    assert store.active_id != "x"
    assert store.is_draft


async def test_load_unknown_session_starts_draft(store):
    await store.load("does-not-exist")

    assert store.is_draft
    assert store.messages[0].id == GREETING_ID


async def test_draft_is_not_persisted_until_first_save(repository, store):
    await store.load()
    draft_id = store.active_id

    assert await repository.list_sessions(USER_ID) == []

    messages = store.messages + [Utterance.create(Role.USER, "hello")]
    await store.persist(draft_id, messages)

    row = await repository.get_session(draft_id)
    assert row.title == "Voice Chat"
    assert len(row.messages) == 2
    assert store.sessions[0].id == draft_id
    assert not store.is_draft


async def test_persist_to_inactive_session_leaves_active_transcript(repository, store):
    await repository.insert_session(make_session("a"))
    await store.load("a")
    store.new_draft()
    draft_messages = list(store.messages)

    await store.persist("a", [Utterance.create(Role.USER, "late write")])

    assert store.messages == draft_messages
    assert store.is_draft
    row = await repository.get_session("a")
    assert [m.text for m in row.messages] == ["late write"]
    assert store.find("a").messages[0].text == "late write"


async def test_switch_unknown_session_raises(store):
    await store.load()

    with pytest.raises(KeyError):
        store.switch("missing")


async def test_delete_other_session_keeps_active(repository, store):
    await repository.insert_session(make_session("a"))
    await repository.insert_session(make_session("b", created_at=2))
    await store.load("a")

    assert await store.delete("b") is False

    assert store.active_id == "a"
    assert [s.id for s in store.sessions] == ["a"]


async def test_rename_updates_list_entry(repository, store):
    await repository.insert_session(make_session("a"))
    await store.load()

    await store.rename("a", "Light and Shadows")

    assert store.find("a").title == "Light and Shadows"
    assert (await repository.get_session("a")).title == "Light and Shadows"


async def test_greeting_uses_friend_without_profile(repository):
    store = VoiceSessionStore(repository, USER_ID)
    await store.load()

    assert store.messages[0].text == "Hello friend! I'm ready to chat. What's on your mind?"


def test_new_draft_ids_increase():
    first = generate_timestamp_id()
    second = generate_timestamp_id()
    assert int(second) > int(first)
