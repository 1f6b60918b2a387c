import asyncio
from datetime import timedelta

import pytest

from chatrecall.core.errors import ExtractionFailed, NotFound, StoreUnavailable
from chatrecall.memory.message_store import MessageStoreConfig, SQLiteMessageStore
from chatrecall.memory.models import MatchMode, MessageKeywords, Role, utc_now


class FakeExtractor:
    def __init__(self, keywords=None, error=None):
        self.keywords = keywords or MessageKeywords.of(["苹果"], ["apple"])
        self.error = error
        self.calls = []

    async def extract(self, text):
        self.calls.append(text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.keywords


async def _open_store(tmp_path, **kwargs):
    keyword_matching = kwargs.pop("keyword_matching", "auto")
    store = SQLiteMessageStore(
        MessageStoreConfig(db_path=str(tmp_path / "chat.db"), keyword_matching=keyword_matching),
        **kwargs,
    )
    await store.initialize()
    return store


@pytest.mark.asyncio
async def test_message_store_persistence_and_ordering(tmp_path):
    store = await _open_store(tmp_path)

    conv = await store.create_conversation("c1", user_id="u1", system_prompt="Be brief.")
    assert conv.id == "c1"
    assert conv.system_prompt == "Be brief."

    await store.append_message("c1", Role.SYSTEM, "Be brief.")
    await store.append_message("c1", Role.USER, "hello")
    await store.append_message("c1", "assistant", "hi back", {"source": "test"})
    await store.append_message("c1", Role.USER, "how are you")

    recent = await store.recent_non_system("c1", 2)
    assert [m.content for m in recent] == ["hi back", "how are you"]
    assert recent[0].metadata == {"source": "test"}
    assert recent[0].created_at <= recent[1].created_at

    everything = await store.recent_non_system("c1", None)
    assert [m.role for m in everything] == [Role.USER, Role.ASSISTANT, Role.USER]

    system = await store.latest_system_message("c1")
    assert system is not None
    assert system.content == "Be brief."

    await store.shutdown()

    # Re-open and verify persistence
    store2 = await _open_store(tmp_path)
    again = await store2.recent_non_system("c1", None)
    assert [m.content for m in again] == ["hello", "hi back", "how are you"]
    await store2.shutdown()


@pytest.mark.asyncio
async def test_create_conversation_is_idempotent_and_generates_ids(tmp_path):
    store = await _open_store(tmp_path)

    first = await store.create_conversation("same", user_id="u1")
    second = await store.create_conversation("same", user_id="someone-else")
    assert second.user_id == first.user_id == "u1"

    generated = await store.create_conversation()
    assert generated.id.startswith("conv_")

    await store.shutdown()


@pytest.mark.asyncio
async def test_append_to_missing_conversation_raises(tmp_path):
    store = await _open_store(tmp_path)
    with pytest.raises(NotFound):
        await store.append_message("missing", Role.USER, "hello")
    await store.shutdown()


@pytest.mark.asyncio
async def test_trim_retain_is_idempotent_and_keeps_system(tmp_path):
    store = await _open_store(tmp_path)
    await store.create_conversation("c1")
    await store.append_message("c1", Role.SYSTEM, "prompt")
    for i in range(6):
        await store.append_message("c1", Role.USER if i % 2 == 0 else Role.ASSISTANT, f"m{i}")

    assert await store.trim_retain("c1", 3) == 3
    kept = [m.content for m in await store.recent_non_system("c1", None)]
    assert kept == ["m3", "m4", "m5"]

    assert await store.trim_retain("c1", 3) == 0
    assert [m.content for m in await store.recent_non_system("c1", None)] == kept

    system = await store.latest_system_message("c1")
    assert system is not None and system.content == "prompt"

    await store.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["json", "like"])
async def test_keyword_filter_any_and_all(tmp_path, backend):
    store = await _open_store(tmp_path, keyword_matching=backend)
    assert store.keyword_matching == backend

    await store.create_conversation("c1")
    m1 = await store.append_message("c1", Role.USER, "I like apples")
    m2 = await store.append_message("c1", Role.ASSISTANT, "Bananas too?")
    await store.append_message("c1", Role.USER, "no annotation here")
    sys_msg = await store.append_message("c1", Role.SYSTEM, "fruit expert")

    await store.set_message_keywords(m1.id, MessageKeywords.of(["苹果"], ["apple", "fruit"]))
    await store.set_message_keywords(m2.id, MessageKeywords.of([], ["banana", "fruit"]))
    await store.set_message_keywords(sys_msg.id, MessageKeywords.of([], ["fruit"]))

    any_fruit = await store.keyword_filtered_non_system("c1", ["fruit"], MatchMode.ANY, 10)
    assert [m.id for m in any_fruit] == [m1.id, m2.id]

    both = await store.keyword_filtered_non_system("c1", ["apple", "fruit"], MatchMode.ALL, 10)
    assert [m.id for m in both] == [m1.id]

    either = await store.keyword_filtered_non_system("c1", ["苹果", "banana"], MatchMode.ANY, 10)
    assert [m.id for m in either] == [m1.id, m2.id]

    newest = await store.keyword_filtered_non_system("c1", ["fruit"], MatchMode.ANY, 1)
    assert [m.id for m in newest] == [m2.id]
    assert newest[0].keywords == MessageKeywords.of([], ["banana", "fruit"])

    apple = await store.keyword_filtered_non_system("c1", ["apple"], MatchMode.ANY, 1)
    assert apple[0].keywords == MessageKeywords.of(["苹果"], ["apple", "fruit"])

    assert await store.keyword_filtered_non_system("c1", ["grape"], MatchMode.ANY, 10) == []
    assert await store.keyword_filtered_non_system("c1", ["%"], MatchMode.ANY, 10) == []
    assert await store.keyword_filtered_non_system("c1", ["apple", "grape"], MatchMode.ALL, 10) == []

    await store.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["json", "like"])
async def test_keyword_filters_keep_newest_matches_in_ascending_order(tmp_path, backend):
    store = await _open_store(tmp_path, keyword_matching=backend)
    await store.create_conversation("a", user_id="u1")
    await store.create_conversation("b", user_id="u1")

    tagged = []
    for cid in ("a", "a", "a", "b", "b"):
        msg = await store.append_message(cid, Role.USER, f"{cid} invoice")
        await store.set_message_keywords(msg.id, MessageKeywords.of([], ["invoice"]))
        tagged.append(msg)

    in_a = await store.keyword_filtered_non_system("a", ["invoice"], MatchMode.ANY, 2)
    assert [m.id for m in in_a] == [tagged[1].id, tagged[2].id]

    by_user = await store.keyword_filtered_non_system_by_user("u1", ["invoice"], MatchMode.ANY, 3)
    assert [m.id for m in by_user] == [tagged[2].id, tagged[3].id, tagged[4].id]

    await store.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["json", "like"])
async def test_mixed_case_annotations_match_on_both_backends(tmp_path, backend):
    store = await _open_store(tmp_path, keyword_matching=backend)
    await store.create_conversation("c1")
    msg = await store.append_message("c1", Role.USER, "Quarterly Report due")
    await store.set_message_keywords(msg.id, MessageKeywords.of([" 报告 "], ["Report", "QUARTERLY"]))

    found = await store.keyword_filtered_non_system("c1", ["report", "quarterly"], MatchMode.ALL, 10)
    assert [m.id for m in found] == [msg.id]
    assert found[0].keywords.secondary == frozenset({"report", "quarterly"})
    assert found[0].keywords.primary == frozenset({"报告"})

    await store.shutdown()


@pytest.mark.asyncio
async def test_auto_keyword_matching_picks_a_backend(tmp_path):
    store = await _open_store(tmp_path)
    assert store.keyword_matching in ("json", "like")
    await store.shutdown()


@pytest.mark.asyncio
async def test_user_scope_filter_and_most_recent_conversation(tmp_path):
    store = await _open_store(tmp_path)
    await store.create_conversation("a", user_id="u1")
    await store.create_conversation("b", user_id="u1")
    await store.create_conversation("other", user_id="u2")

    a1 = await store.append_message("a", Role.USER, "deploy the app")
    b1 = await store.append_message("b", Role.USER, "deploy again")
    o1 = await store.append_message("other", Role.USER, "deploy elsewhere")
    for m in (a1, b1, o1):
        await store.set_message_keywords(m.id, MessageKeywords.of([], ["deploy"]))

    found = await store.keyword_filtered_non_system_by_user("u1", ["deploy"], MatchMode.ANY, 10)
    assert [m.id for m in found] == [a1.id, b1.id]

    # Appending bumps the conversation's update time.
    await store.append_message("a", Role.ASSISTANT, "done")
    recent = await store.most_recent_conversation_for_user("u1")
    assert recent is not None and recent.id == "a"

    await store.soft_delete_conversation("a")
    found = await store.keyword_filtered_non_system_by_user("u1", ["deploy"], MatchMode.ANY, 10)
    assert [m.id for m in found] == [b1.id]
    assert (await store.most_recent_conversation_for_user("u1")).id == "b"
    assert await store.most_recent_conversation_for_user("nobody") is None

    await store.shutdown()


@pytest.mark.asyncio
async def test_soft_delete_and_expire(tmp_path):
    store = await _open_store(tmp_path)
    await store.create_conversation("c1", user_id="u1")
    await store.create_conversation("c2", user_id="u1")
    await store.append_message("c1", Role.USER, "hello")

    assert await store.soft_delete_conversation("c1") is True
    assert await store.soft_delete_conversation("c1") is False
    assert await store.get_conversation("c1") is None
    assert await store.recent_non_system("c1", None) == []

    expired = await store.expire_conversations(utc_now() + timedelta(minutes=1))
    assert expired == ["c2"]
    assert await store.list_conversations_for_user("u1") == []

    await store.shutdown()


@pytest.mark.asyncio
async def test_update_conversation_merges_metadata(tmp_path):
    store = await _open_store(tmp_path)
    await store.create_conversation("c1", metadata={"a": 1})

    updated = await store.update_conversation("c1", metadata={"b": 2})
    assert updated.metadata == {"a": 1, "b": 2}
    assert updated.system_prompt is None

    updated = await store.update_conversation("c1", system_prompt="new prompt")
    assert updated.system_prompt == "new prompt"
    assert updated.metadata == {"a": 1, "b": 2}

    with pytest.raises(NotFound):
        await store.update_conversation("missing", metadata={})

    await store.shutdown()


@pytest.mark.asyncio
async def test_count_messages_by_role(tmp_path):
    store = await _open_store(tmp_path)
    await store.create_conversation("c1")
    await store.append_message("c1", Role.SYSTEM, "sys")
    await store.append_message("c1", Role.USER, "abc")
    await store.append_message("c1", Role.ASSISTANT, "de")
    await store.append_message("c1", Role.USER, "f")

    stats = await store.count_messages_by_role("c1")
    assert stats.total_messages == 4
    assert stats.user_messages == 2
    assert stats.assistant_messages == 1
    assert stats.system_messages == 1
    assert stats.total_characters == 9

    await store.shutdown()


@pytest.mark.asyncio
async def test_store_errors_surface_as_store_unavailable(tmp_path):
    store = SQLiteMessageStore(MessageStoreConfig(db_path=str(tmp_path / "chat.db")))
    with pytest.raises(StoreUnavailable):
        await store.recent_non_system("c1", 5)

    await store.initialize()
    await store.create_conversation("c1")
    store._conn.execute("DROP TABLE conversation_messages")

    with pytest.raises(StoreUnavailable):
        await store.recent_non_system("c1", 5)

    await store.shutdown()
    with pytest.raises(StoreUnavailable):
        await store.get_conversation("c1")


@pytest.mark.asyncio
async def test_background_annotation(tmp_path):
    extractor = FakeExtractor(MessageKeywords.of(["苹果"], ["apple"]))
    store = await _open_store(tmp_path, extractor=extractor)
    await store.create_conversation("c1")

    msg = await store.append_message("c1", Role.USER, "I like apples")
    await store.append_message("c1", Role.SYSTEM, "system text is never annotated")
    await store.append_message("c1", Role.USER, "no annotation wanted", annotate=False)
    await store.wait_for_annotations()

    assert extractor.calls == ["I like apples"]
    found = await store.keyword_filtered_non_system("c1", ["apple"], MatchMode.ANY, 10)
    assert [m.id for m in found] == [msg.id]

    await store.shutdown()


@pytest.mark.asyncio
async def test_annotation_failure_is_swallowed_and_reported(tmp_path):
    errors = []
    extractor = FakeExtractor(error=ExtractionFailed("model down"))
    store = await _open_store(
        tmp_path,
        extractor=extractor,
        on_annotation_error=lambda message_id, exc: errors.append((message_id, exc)),
    )
    await store.create_conversation("c1")

    msg = await store.append_message("c1", Role.USER, "hello")
    await store.wait_for_annotations()

    assert len(errors) == 1
    assert errors[0][0] == msg.id
    assert isinstance(errors[0][1], ExtractionFailed)

    stored = await store.recent_non_system("c1", None)
    assert [m.id for m in stored] == [msg.id]
    assert stored[0].keywords is None

    await store.shutdown()
