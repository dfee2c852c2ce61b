import asyncio

import pytest
from pymongo.errors import ConnectionFailure

from rapidgig_chat.core.errors import ChatPermissionError, NotFoundError, TransientIOError
from rapidgig_chat.repositories.message_repository import DELETED_PLACEHOLDER
from tests.conftest import ALICE, BOB, CAROL


async def test_get_or_create_is_symmetric(chat_service):
    first = await chat_service.get_or_create_conversation(ALICE, BOB)
    second = await chat_service.get_or_create_conversation(BOB, ALICE)

    assert first.id == second.id
    assert sorted(first.participants) == [ALICE, BOB]
    assert first.unread_for(ALICE) == 0
    assert first.unread_for(BOB) == 0


async def test_concurrent_get_or_create_yields_one_conversation(chat_service, db):
    results = await asyncio.gather(
        chat_service.get_or_create_conversation(ALICE, BOB),
        chat_service.get_or_create_conversation(BOB, ALICE),
        chat_service.get_or_create_conversation(ALICE, BOB),
    )

    assert len({c.id for c in results}) == 1
    assert await db["conversations"].count_documents({}) == 1


async def test_cannot_converse_with_yourself(chat_service):
    with pytest.raises(ValueError):
        await chat_service.get_or_create_conversation(ALICE, ALICE)


async def test_get_conversation_checks_membership(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)

    with pytest.raises(ChatPermissionError):
        await chat_service.get_conversation(convo.id, CAROL)
    with pytest.raises(NotFoundError):
        await chat_service.get_conversation("65f000000000000000000000", ALICE)
    with pytest.raises(NotFoundError):
        await chat_service.get_conversation("not-an-id", ALICE)


async def test_append_assigns_increasing_seq_and_updates_conversation(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)

    first = await chat_service.append_message(convo.id, ALICE, "hi")
    second = await chat_service.append_message(convo.id, BOB, "hey")
    third = await chat_service.append_message(convo.id, ALICE, "  how are you?  ")

    assert [first.seq, second.seq, third.seq] == [1, 2, 3]
    assert third.content == "how are you?"
    assert first.receiver_id == BOB
    assert second.receiver_id == ALICE
    assert not first.is_read

    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.last_message_id == third.id
    assert refreshed.last_message_preview == "how are you?"
    assert refreshed.last_message_sender_id == ALICE
    assert refreshed.unread_for(BOB) == 2
    assert refreshed.unread_for(ALICE) == 1


async def test_append_rejects_empty_and_non_participants(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)

    with pytest.raises(ValueError):
        await chat_service.append_message(convo.id, ALICE, "   ")
    with pytest.raises(ChatPermissionError):
        await chat_service.append_message(convo.id, CAROL, "let me in")

    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.last_message_id is None
    assert refreshed.unread_for(BOB) == 0


async def test_attachment_without_text_uses_file_name_as_preview(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)

    msg = await chat_service.append_message(
        convo.id, ALICE, "", message_type="file", file_url="/uploads/cv.pdf", file_name="cv.pdf", file_size=1200
    )

    assert msg.file_url == "/uploads/cv.pdf"
    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.last_message_preview == "cv.pdf"


async def test_duplicate_client_message_id_is_stored_once(chat_service, db):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)

    first = await chat_service.append_message(convo.id, ALICE, "once", client_message_id="c-1")
    again = await chat_service.append_message(convo.id, ALICE, "once", client_message_id="c-1")

    assert first.id == again.id
    assert await db["messages"].count_documents({}) == 1
    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.unread_for(BOB) == 1


async def test_history_pages_cover_everything_once_in_order(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    for i in range(7):
        await chat_service.append_message(convo.id, ALICE if i % 2 else BOB, f"m{i}")

    seen = []
    before = None
    while True:
        items, next_cursor, has_more = await chat_service.get_history(convo.id, ALICE, limit=3, before=before)
        assert [m.seq for m in items] == sorted(m.seq for m in items)
        seen = [m.seq for m in items] + seen
        if not has_more:
            assert next_cursor is None
            break
        before = next_cursor

    assert seen == list(range(1, 8))


async def test_history_page_number_without_cursor(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    for i in range(5):
        await chat_service.append_message(convo.id, ALICE, f"m{i}")

    items, _, has_more = await chat_service.get_history(convo.id, BOB, limit=2, page=2)

    assert [m.seq for m in items] == [2, 3]
    assert has_more


async def test_list_messages_is_newest_first(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    for i in range(4):
        await chat_service.append_message(convo.id, ALICE, f"m{i}")

    newest = await chat_service.list_messages(convo.id, limit=2, user_id=BOB)
    older = await chat_service.list_messages(convo.id, before=newest[-1].seq, limit=10, user_id=BOB)

    assert [m.seq for m in newest] == [4, 3]
    assert [m.seq for m in older] == [2, 1]


async def test_mark_read_only_touches_reader_inbound_and_is_idempotent(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    await chat_service.append_message(convo.id, ALICE, "one")
    await chat_service.append_message(convo.id, ALICE, "two")
    await chat_service.append_message(convo.id, BOB, "reply")

    assert await chat_service.mark_read(convo.id, BOB) == 2
    assert await chat_service.mark_read(convo.id, BOB) == 0

    items, _, _ = await chat_service.get_history(convo.id, BOB)
    by_sender = {(m.sender_id, m.content): m.is_read for m in items}
    assert by_sender[(ALICE, "one")] and by_sender[(ALICE, "two")]
    assert not by_sender[(BOB, "reply")]

    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.unread_for(BOB) == 0
    assert refreshed.unread_for(ALICE) == 1


async def test_mark_read_decrements_by_flipped_count_and_floors_at_zero(chat_service, db):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    await chat_service.append_message(convo.id, ALICE, "one")
    await chat_service.append_message(convo.id, ALICE, "two")
    # counter drifted below the real number of unread rows
    await db["conversations"].update_one({"participant_key": f"{ALICE}:{BOB}"}, {"$set": {f"unread_counters.{BOB}": 1}})

    assert await chat_service.mark_read(convo.id, BOB) == 2

    refreshed = await chat_service.get_conversation(convo.id)
    assert refreshed.unread_for(BOB) == 0


async def test_list_conversations_most_recent_first(chat_service):
    with_bob = await chat_service.get_or_create_conversation(ALICE, BOB)
    with_carol = await chat_service.get_or_create_conversation(ALICE, CAROL)

    await chat_service.append_message(with_carol.id, CAROL, "first")
    await asyncio.sleep(0.01)
    await chat_service.append_message(with_bob.id, BOB, "second")

    convos, next_cursor = await chat_service.list_conversations_for(ALICE, limit=10)

    assert [c.id for c in convos] == [with_bob.id, with_carol.id]
    assert next_cursor is None
    bob_only, _ = await chat_service.list_conversations_for(BOB)
    assert [c.id for c in bob_only] == [with_bob.id]


async def test_list_conversations_rejects_garbage_cursor(chat_service):
    with pytest.raises(ValueError):
        await chat_service.list_conversations_for(ALICE, cursor="garbage")


async def test_delete_is_soft_and_sender_only(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    msg = await chat_service.append_message(convo.id, ALICE, "oops")

    with pytest.raises(NotFoundError):
        await chat_service.delete_message(msg.id, BOB)

    deleted = await chat_service.delete_message(msg.id, ALICE)
    assert deleted.is_deleted
    assert deleted.content == DELETED_PLACEHOLDER
    assert deleted.seq == msg.seq


async def test_search_is_case_insensitive_and_scoped_to_member_threads(chat_service):
    with_bob = await chat_service.get_or_create_conversation(ALICE, BOB)
    bob_carol = await chat_service.get_or_create_conversation(BOB, CAROL)
    await chat_service.append_message(with_bob.id, ALICE, "The Invoice is attached")
    await chat_service.append_message(with_bob.id, BOB, "thanks")
    await chat_service.append_message(bob_carol.id, CAROL, "invoice for carol")
    hidden = await chat_service.append_message(with_bob.id, BOB, "old invoice")
    await chat_service.delete_message(hidden.id, BOB)

    found = await chat_service.search_messages(ALICE, "invoice")

    assert [m.content for m in found] == ["The Invoice is attached"]
    with pytest.raises(ChatPermissionError):
        await chat_service.search_messages(ALICE, "invoice", conversation_id=bob_carol.id)
    with pytest.raises(ValueError):
        await chat_service.search_messages(ALICE, "  ")


async def test_search_treats_term_literally(chat_service):
    convo = await chat_service.get_or_create_conversation(ALICE, BOB)
    await chat_service.append_message(convo.id, ALICE, "rate is $40.00 (negotiable)")
    await chat_service.append_message(convo.id, ALICE, "rate is 40")

    found = await chat_service.search_messages(BOB, "$40.00 (")

    assert len(found) == 1


async def test_unread_total_sums_across_conversations(chat_service):
    with_bob = await chat_service.get_or_create_conversation(ALICE, BOB)
    with_carol = await chat_service.get_or_create_conversation(ALICE, CAROL)
    await chat_service.append_message(with_bob.id, BOB, "1")
    await chat_service.append_message(with_bob.id, BOB, "2")
    await chat_service.append_message(with_carol.id, CAROL, "3")

    assert await chat_service.unread_total(ALICE) == 3
    assert await chat_service.unread_total(BOB) == 0


async def test_store_outage_surfaces_as_transient_error(chat_service, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise ConnectionFailure("no primary")

    monkeypatch.setattr(chat_service._conversation_repo, "get_or_create_one_to_one", unavailable)

    with pytest.raises(TransientIOError):
        await chat_service.get_or_create_conversation(ALICE, BOB)
