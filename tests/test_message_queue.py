"""Tests for the bounded outbound message queue."""

from booth_client.message_queue import MessageQueue


class TestEnqueue:
    def test_starts_empty(self):
        q = MessageQueue()
        assert len(q) == 0
        assert q.capacity == 50

    def test_enqueue_creates_pending_message(self):
        q = MessageQueue()
        msg = q.enqueue("hi", "E", meta={"casterId": "c1"})
        assert msg.text == "hi"
        assert msg.channel_id == "E"
        assert msg.retry_count == 0
        assert msg.meta == {"casterId": "c1"}
        assert len(q) == 1

    def test_ids_are_unique(self):
        q = MessageQueue()
        ids = {q.enqueue(f"m{i}", "E").id for i in range(20)}
        assert len(ids) == 20

    def test_never_exceeds_capacity(self):
        q = MessageQueue()
        for i in range(120):
            q.enqueue(f"m{i}", "E")
            assert len(q) <= 50
        assert len(q) == 50

    def test_51st_enqueue_evicts_oldest(self):
        q = MessageQueue()
        for i in range(51):
            q.enqueue(f"m{i}", "E")
        texts = [m.text for m in q.peek()]
        assert texts[0] == "m1"
        assert texts[-1] == "m50"
        assert q.get_stats()["evicted"] == 1


class TestFirst:
    def test_first_is_oldest_and_stays_queued(self):
        q = MessageQueue()
        for text in ("a", "b", "c"):
            q.enqueue(text, "E")
        assert q.first().text == "a"
        assert len(q) == 3

    def test_first_empty(self):
        assert MessageQueue().first() is None

    def test_discarding_head_advances_in_order(self):
        q = MessageQueue()
        for text in ("a", "b", "c"):
            q.enqueue(text, "E")
        seen = []
        while q.first() is not None:
            head = q.first()
            seen.append(head.text)
            q.discard(head.id)
        assert seen == ["a", "b", "c"]


class TestDiscard:
    def test_discard_by_id(self):
        q = MessageQueue()
        keep = q.enqueue("keep", "E")
        drop = q.enqueue("drop", "E")
        assert q.discard(drop.id) is True
        assert [m.id for m in q.peek()] == [keep.id]

    def test_discard_unknown(self):
        assert MessageQueue().discard("nope") is False
