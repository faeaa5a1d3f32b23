"""Tests for best-effort activity recording."""

from schoolgate.service.activity import ActivityRecorder
from schoolgate.service.sessions import RequestMetadata
from schoolgate.storage.memory import MemoryStore
from schoolgate.storage.models import Role


class _BrokenSink:
    def __init__(self):
        self.calls = 0

    def append_activity(self, entry):
        self.calls += 1
        raise RuntimeError("audit table unavailable")


class TestActivityRecorder:
    async def test_record_is_written_in_background(self, memory_store):
        user = memory_store.create_user("a@x.com", "hash", Role.STUDENT)
        recorder = ActivityRecorder(memory_store)

        recorder.record(
            user.id,
            "login",
            request=RequestMetadata(user_agent="pytest", ip_address="10.0.0.1"),
        )
        await recorder.drain()

        [entry] = memory_store.list_activity(user.id)
        assert entry.action == "login"
        assert entry.entity == "user"
        assert entry.entity_id == user.id
        assert entry.user_agent == "pytest"
        assert entry.ip_address == "10.0.0.1"

    async def test_failures_are_swallowed(self):
        sink = _BrokenSink()
        recorder = ActivityRecorder(sink)

        recorder.record("user-1", "logout")
        await recorder.drain()

        assert sink.calls == 1

    def test_record_without_event_loop_writes_inline(self):
        store = MemoryStore()
        user = store.create_user("b@x.com", "hash", Role.PARENT)
        recorder = ActivityRecorder(store)

        recorder.record(user.id, "logout_all", metadata={"tokens_removed": 2})

        [entry] = store.list_activity(user.id)
        assert entry.metadata == {"tokens_removed": 2}

    def test_inline_failure_is_swallowed(self):
        recorder = ActivityRecorder(_BrokenSink())

        recorder.record("user-1", "login")
