import asyncio
import tempfile
import unittest

from examtutor.conversation_store import ConversationStore
from examtutor.data_store import DataStoreError

from _support import PAPER_ID, make_backends, seed_paper


class _FlakyStore:
    """Delegates to a real store but fails the first `failures` inserts."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.insert_attempts = 0

    async def insert(self, table, record):
        self.insert_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise DataStoreError("503 Service Unavailable")
        return await self.inner.insert(table, record)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestConversationStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store, self.storage = make_backends(self.tmp.name)
        seed_paper(self.store, self.storage, with_pdf=False)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    async def test_append_turn_creates_conversation_and_orders_messages(self):
        conversations = ConversationStore(self.store, backoff_s=0)
        conversation_id = await conversations.append_turn(
            user_id="u1",
            paper_id=PAPER_ID,
            user_text="Question 2",
            assistant_text="Start by factorising.",
            question_ref="2",
            title="Maths Paper 1",
        )
        same_id = await conversations.append_turn(
            user_id="u1",
            paper_id=PAPER_ID,
            user_text="and then?",
            assistant_text="Set each factor to zero.",
            question_ref="2",
            conversation_id=conversation_id,
        )
        self.assertEqual(conversation_id, same_id)

        messages = await conversations.load_messages(conversation_id)
        self.assertEqual([m["role"] for m in messages], ["user", "assistant", "user", "assistant"])
        self.assertEqual([m["seq"] for m in messages], [1, 2, 3, 4])
        self.assertEqual(messages[0]["content"], "Question 2")
        self.assertEqual({m["question_ref"] for m in messages}, {"2"})
        self.assertEqual(await conversations.count_messages(conversation_id), 4)

        stored = await conversations.find_conversation("u1", PAPER_ID)
        self.assertEqual(stored["title"], "Maths Paper 1")

    async def test_one_conversation_per_user_and_paper(self):
        conversations = ConversationStore(self.store)
        first = await conversations.ensure_conversation("u1", PAPER_ID, "t")
        second = await ConversationStore(self.store).ensure_conversation("u1", PAPER_ID, "t")
        other_user = await conversations.ensure_conversation("u2", PAPER_ID, "t")
        self.assertEqual(first, second)
        self.assertNotEqual(first, other_user)

    async def test_sequence_continues_across_store_instances(self):
        conversation_id = await ConversationStore(self.store).append_turn(
            user_id="u1", paper_id=PAPER_ID, user_text="q1", assistant_text="a1", question_ref="1"
        )
        await ConversationStore(self.store).append_message(conversation_id, "user", "q1 again", "1")
        messages = await ConversationStore(self.store).load_messages(conversation_id)
        self.assertEqual([m["seq"] for m in messages], [1, 2, 3])

    async def test_concurrent_appends_get_distinct_sequence_numbers(self):
        conversations = ConversationStore(self.store)
        conversation_id = await conversations.ensure_conversation("u1", PAPER_ID)
        await asyncio.gather(
            *(conversations.append_message(conversation_id, "user", f"m{i}") for i in range(5))
        )
        messages = await conversations.load_messages(conversation_id)
        self.assertEqual([m["seq"] for m in messages], [1, 2, 3, 4, 5])

    async def test_transient_failures_are_retried(self):
        flaky = _FlakyStore(self.store, failures=1)
        conversations = ConversationStore(flaky, max_attempts=3, backoff_s=0)
        conversation_id = await conversations.ensure_conversation("u1", PAPER_ID)
        self.assertEqual(flaky.insert_attempts, 2)
        await conversations.append_message(conversation_id, "assistant", "hello")
        self.assertEqual(len(await conversations.load_messages(conversation_id)), 1)

    async def test_gives_up_after_max_attempts(self):
        conversations = ConversationStore(self.store, backoff_s=0)
        conversation_id = await conversations.ensure_conversation("u1", PAPER_ID)
        flaky = _FlakyStore(self.store, failures=5)
        with self.assertRaises(DataStoreError):
            await ConversationStore(flaky, max_attempts=2, backoff_s=0).append_message(conversation_id, "user", "x")
        self.assertEqual(flaky.insert_attempts, 2)

    async def test_rejects_unknown_role(self):
        conversations = ConversationStore(self.store)
        with self.assertRaises(ValueError):
            await conversations.append_message("c1", "system", "nope")


if __name__ == "__main__":
    unittest.main()
