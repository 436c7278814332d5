"""
Tests for the in-process change feed and its transactional publishing.
"""

import asyncio
import threading

import pytest

from quickloans import repository
from quickloans.policies import Identity
from quickloans.realtime import ALL_EVENTS, INSERT, UPDATE, Change, ChangeFeed
from quickloans.storage import record_change
from tests.conftest import seed_profile


def _change(conversation_id="c1", event=INSERT, table="chat_messages"):
    return Change(table=table, event=event, record={"id": 1, "conversation_id": conversation_id})


class TestChangeFeed:

    @pytest.mark.asyncio
    async def test_filters_by_table_event_and_conversation(self):
        feed = ChangeFeed()
        subscription = feed.subscribe("chat_messages", (INSERT,), conversation_id="c1")

        assert feed.publish(_change(table="chat_typing_status")) == 0
        assert feed.publish(_change(event=UPDATE)) == 0
        assert feed.publish(_change(conversation_id="c2")) == 0
        assert feed.publish(_change()) == 1

        change = await asyncio.wait_for(subscription.get(), timeout=1)
        assert change.record["conversation_id"] == "c1"
        subscription.close()

    @pytest.mark.asyncio
    async def test_all_events(self):
        feed = ChangeFeed()
        subscription = feed.subscribe("chat_typing_status", (ALL_EVENTS,))

        feed.publish(_change(table="chat_typing_status", event=INSERT))
        feed.publish(_change(table="chat_typing_status", event=UPDATE))

        events = [(await asyncio.wait_for(subscription.get(), timeout=1)).event for _ in range(2)]
        assert events == [INSERT, UPDATE]
        subscription.close()

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        feed = ChangeFeed()
        subscription = feed.subscribe("chat_messages")

        thread = threading.Thread(target=feed.publish, args=(_change(),))
        thread.start()
        thread.join()

        change = await asyncio.wait_for(subscription.get(), timeout=1)
        assert change.table == "chat_messages"
        subscription.close()

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        feed = ChangeFeed()
        subscription = feed.subscribe("chat_messages")
        received = []

        async def consume():
            async for change in subscription:
                received.append(change)

        task = asyncio.create_task(consume())
        feed.publish(_change())
        await asyncio.sleep(0.05)
        subscription.close()
        await asyncio.wait_for(task, timeout=1)

        assert len(received) == 1
        assert feed.subscriber_count == 0
        assert feed.publish(_change()) == 0

    @pytest.mark.asyncio
    async def test_disconnect_all(self):
        feed = ChangeFeed()
        first = feed.subscribe("chat_messages")
        second = feed.subscribe("chat_typing_status")

        feed.disconnect_all()

        assert feed.subscriber_count == 0
        assert await asyncio.wait_for(first.get(), timeout=1) is None
        assert await asyncio.wait_for(second.get(), timeout=1) is None


class TestTransactionalPublish:

    @pytest.mark.asyncio
    async def test_published_after_commit(self, platform):
        seed_profile(platform, "user-1")
        user = Identity("user-1")
        with platform.session() as db:
            conversation_id = repository.get_or_create_conversation(db, user)[0].id

        subscription = platform.feed.subscribe("chat_messages", (INSERT,), conversation_id)
        with platform.session() as db:
            repository.create_message(db, user, conversation_id, "Hello", is_support=False)

        change = await asyncio.wait_for(subscription.get(), timeout=1)
        assert change.record["message"] == "Hello"
        assert change.record["conversation_id"] == conversation_id
        subscription.close()

    @pytest.mark.asyncio
    async def test_rolled_back_changes_are_discarded(self, platform):
        seed_profile(platform, "user-1")
        subscription = platform.feed.subscribe("profiles")

        with platform.session() as db:
            profile = repository.find_profile(db, "user-1")
            record_change(db, "profiles", UPDATE, profile)
            db.rollback()
            db.commit()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscription.get(), timeout=0.1)
        subscription.close()
