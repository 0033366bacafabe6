"""Tests for the typed JSON memory stores and their read cache."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.exceptions import InvalidTransitionError, StoreIOError
from agent_memory.models import (
    EmotionIntensity,
    EmotionKind,
    EmotionTag,
    EpisodicContext,
    MemoryType,
    ProspectiveStatus,
)
from agent_memory.stores import (
    CollectionCache,
    EmotionalMemoryStore,
    EpisodicMemoryStore,
    FileVersion,
    PathLockRegistry,
    ProceduralMemoryStore,
    ProspectiveMemoryStore,
    SemanticMemoryStore,
    VersionedResource,
    WorkingMemoryStore,
    is_stale,
    trigger_matches,
)


class TickClock:
    """Monotonic float clock for cache TTL tests."""

    def __init__(self):
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "stores"


@pytest.fixture
def semantic(store_dir, clock):
    return SemanticMemoryStore(store_dir / "semantic.json", clock=clock)


@pytest.fixture
def procedural(store_dir, clock):
    return ProceduralMemoryStore(store_dir / "procedural.json", clock=clock)


@pytest.fixture
def prospective(store_dir, clock):
    return ProspectiveMemoryStore(store_dir / "prospective.json", clock=clock)


# ---------------------------------------------------------------------------
# Semantic
# ---------------------------------------------------------------------------


class TestSemanticStore:
    @pytest.mark.asyncio
    async def test_add_then_get(self, semantic):
        memory_id = await semantic.add(
            fact="User prefers dark mode", category="preferences", confidence=0.9
        )
        records = await semantic.query()
        assert len(records) == 1
        assert records[0].id == memory_id
        assert records[0].fact == "User prefers dark mode"
        assert records[0].category == "preferences"
        assert records[0].type == MemoryType.SEMANTIC

    @pytest.mark.asyncio
    async def test_file_format(self, semantic):
        await semantic.add(fact="Tea over coffee")
        data = json.loads(semantic.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["memories"][0]["fact"] == "Tea over coffee"
        assert data["memories"][0]["type"] == "semantic"

    @pytest.mark.asyncio
    async def test_confidence_clamped(self, semantic):
        memory_id = await semantic.add(fact="x", confidence=3.0)
        assert (await semantic.get(memory_id)).confidence == 1.0

    @pytest.mark.asyncio
    async def test_query_filters(self, semantic):
        await semantic.add(fact="Likes jazz", category="preferences", scope_id="s1")
        await semantic.add(fact="Lives in Oslo", category="profile", scope_id="s2")

        assert [m.fact for m in await semantic.query(category="profile")] == ["Lives in Oslo"]
        assert [m.fact for m in await semantic.query(scope_id="s1")] == ["Likes jazz"]
        assert [m.fact for m in await semantic.query(text="OSLO")] == ["Lives in Oslo"]

    @pytest.mark.asyncio
    async def test_text_filter_matches_words(self, semantic):
        await semantic.add(fact="User prefers the dark theme in every editor")
        await semantic.add(fact="Lives in Oslo")

        matches = await semantic.query(text="dark editor theme")
        assert [m.fact for m in matches] == ["User prefers the dark theme in every editor"]
        assert await semantic.query(text="light mode") == []

    @pytest.mark.asyncio
    async def test_newest_first(self, semantic, clock):
        await semantic.add(fact="older")
        clock.advance(minutes=1)
        await semantic.add(fact="newer")
        assert [m.fact for m in await semantic.query()] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_update_keeps_immutable_fields(self, semantic, clock):
        memory_id = await semantic.add(fact="v1")
        original = await semantic.get(memory_id)
        clock.advance(seconds=5)

        assert await semantic.update(memory_id, fact="v2", id="hijack", created_at=clock.now) is True
        updated = await semantic.get(memory_id)
        assert updated.fact == "v2"
        assert updated.created_at == original.created_at
        assert updated.updated_at > original.updated_at

    @pytest.mark.asyncio
    async def test_update_and_remove_unknown(self, semantic):
        assert await semantic.update("missing", fact="x") is False
        assert await semantic.remove("missing") is False

    @pytest.mark.asyncio
    async def test_remove(self, semantic):
        memory_id = await semantic.add(fact="bye")
        assert await semantic.remove(memory_id) is True
        assert await semantic.all() == []

    @pytest.mark.asyncio
    async def test_add_many_single_save(self, semantic):
        ids = await semantic.add_many([{"fact": "a"}, {"fact": "b"}])
        assert len(ids) == 2
        assert {m.fact for m in await semantic.all()} == {"a", "b"}


# ---------------------------------------------------------------------------
# Persistence edge cases
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, semantic):
        assert await semantic.all() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_falls_back_to_backup(self, semantic):
        await semantic.add(fact="first")
        await semantic.add(fact="second")  # previous version now in .bak
        semantic.path.write_text("{not json", encoding="utf-8")

        assert [m.fact for m in await semantic.all()] == ["first"]

    @pytest.mark.asyncio
    async def test_corrupt_without_backup_is_empty(self, semantic):
        semantic.path.parent.mkdir(parents=True)
        semantic.path.write_text("garbage", encoding="utf-8")
        assert await semantic.all() == []

    @pytest.mark.asyncio
    async def test_trailing_commas_tolerated(self, semantic):
        semantic.path.parent.mkdir(parents=True)
        semantic.path.write_text(
            '{"version": 1, "memories": [{"type": "semantic", "fact": "ok",},]}',
            encoding="utf-8",
        )
        assert [m.fact for m in await semantic.all()] == ["ok"]

    @pytest.mark.asyncio
    async def test_foreign_and_invalid_records_skipped(self, semantic):
        semantic.path.parent.mkdir(parents=True)
        semantic.path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "memories": [
                        {"type": "episodic", "event": "wrong store"},
                        {"type": "semantic"},
                        {"type": "semantic", "fact": "valid"},
                    ],
                }
            ),
            encoding="utf-8",
        )
        assert [m.fact for m in await semantic.all()] == ["valid"]

    @pytest.mark.asyncio
    async def test_failed_save_leaves_file_untouched(self, semantic, monkeypatch):
        await semantic.add(fact="kept")
        before = semantic.path.read_text(encoding="utf-8")

        def _boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("agent_memory.stores.base.os.fsync", _boom)
        with pytest.raises(StoreIOError):
            await semantic.add(fact="lost")
        assert semantic.path.read_text(encoding="utf-8") == before
        assert not semantic.path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_shared_lock_registry(self, store_dir):
        locks = PathLockRegistry()
        a = SemanticMemoryStore(store_dir / "semantic.json", locks=locks)
        b = SemanticMemoryStore(store_dir / "semantic.json", locks=locks)
        assert a.lock is b.lock
        assert len(locks) == 1

    @pytest.mark.asyncio
    async def test_empty_injected_cache_is_used(self, store_dir):
        cache = CollectionCache(ttl_seconds=300, clock=TickClock())
        store = SemanticMemoryStore(store_dir / "semantic.json", cache=cache)
        assert len(cache) == 0
        await store.add(fact="first")
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_concurrent_adds_from_two_instances(self, store_dir, clock):
        locks = PathLockRegistry()
        cache = CollectionCache(ttl_seconds=300, clock=TickClock())
        a = SemanticMemoryStore(store_dir / "semantic.json", locks=locks, cache=cache, clock=clock)
        b = SemanticMemoryStore(store_dir / "semantic.json", locks=locks, cache=cache, clock=clock)

        ids = await asyncio.gather(
            *(store.add(fact=f"fact {i}") for i, store in enumerate([a, b] * 10))
        )

        assert len(set(ids)) == 20
        assert {m.id for m in await a.all()} == set(ids)
        on_disk = json.loads((store_dir / "semantic.json").read_text(encoding="utf-8"))
        assert len(on_disk["memories"]) == 20

    @pytest.mark.asyncio
    async def test_concurrent_record_use_keeps_every_count(self, store_dir, clock):
        locks = PathLockRegistry()
        a = ProceduralMemoryStore(store_dir / "procedural.json", locks=locks, clock=clock)
        b = ProceduralMemoryStore(store_dir / "procedural.json", locks=locks, clock=clock)
        memory_id = await a.add(pattern="p", trigger="t", action="a")

        await asyncio.gather(
            *(store.record_use(memory_id, success=True) for store in [a, b] * 5),
            *(store.record_use(memory_id, success=False) for store in [b, a] * 2),
        )

        stored = await b.get(memory_id)
        assert stored.success_count == 10
        assert stored.failure_count == 4


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class TestCollectionCache:
    def test_is_stale_by_ttl(self, tmp_path):
        version = FileVersion(mtime_ns=1, size=10)
        resource = VersionedResource(path=tmp_path, version=version, value=[], loaded_at=0.0)
        assert is_stale(resource, version, now=5.0, ttl_seconds=10.0) is False
        assert is_stale(resource, version, now=11.0, ttl_seconds=10.0) is True

    def test_is_stale_by_version(self, tmp_path):
        resource = VersionedResource(
            path=tmp_path, version=FileVersion(mtime_ns=1, size=10), value=[], loaded_at=0.0
        )
        assert is_stale(resource, FileVersion(mtime_ns=2, size=10), now=1.0, ttl_seconds=10.0)
        assert is_stale(resource, None, now=1.0, ttl_seconds=10.0)

    def test_hit_then_expire(self, tmp_path):
        path = tmp_path / "x.json"
        path.write_text("{}", encoding="utf-8")
        tick = TickClock()
        cache = CollectionCache(ttl_seconds=30, clock=tick)

        cache.put(path, ["value"])
        assert cache.get(path) == ["value"]
        tick.value += 31
        assert cache.get(path) is None
        assert cache.get_stats()["stale"] == 1

    def test_external_write_invalidates(self, tmp_path):
        path = tmp_path / "x.json"
        path.write_text("{}", encoding="utf-8")
        cache = CollectionCache(ttl_seconds=300, clock=TickClock())
        cache.put(path, ["old"])

        path.write_text('{"changed": true}', encoding="utf-8")
        assert cache.get(path) is None

    @pytest.mark.asyncio
    async def test_store_reads_through_cache(self, store_dir):
        cache = CollectionCache(ttl_seconds=300, clock=TickClock())
        store = SemanticMemoryStore(store_dir / "semantic.json", cache=cache)
        await store.add(fact="cached")
        await store.all()
        assert cache.get_stats()["hits"] >= 1

        # mutating a returned record must not leak into the cache
        (await store.all())[0].fact = "mutated"
        assert (await store.all())[0].fact == "cached"


# ---------------------------------------------------------------------------
# Procedural
# ---------------------------------------------------------------------------


class TestProceduralStore:
    @pytest.mark.asyncio
    async def test_success_rate_after_failure(self, procedural):
        memory_id = await procedural.add(
            pattern="deploy", trigger="user says ship it", action="run deploy",
            success_count=3, failure_count=1,
        )
        assert (await procedural.get(memory_id)).success_rate == pytest.approx(0.75)

        updated = await procedural.record_use(memory_id, success=False)
        assert updated.failure_count == 2
        assert updated.success_rate == pytest.approx(0.6)
        assert updated.last_used is not None

    @pytest.mark.asyncio
    async def test_unused_rate_is_zero(self, procedural):
        memory_id = await procedural.add(pattern="p", trigger="t", action="a")
        assert (await procedural.get(memory_id)).success_rate == 0.0

    @pytest.mark.asyncio
    async def test_record_use_unknown(self, procedural):
        assert await procedural.record_use("missing", success=True) is None

    @pytest.mark.asyncio
    async def test_find_matching(self, procedural):
        good = await procedural.add(
            pattern="greet", trigger="good morning", action="say hi", success_count=5
        )
        await procedural.add(pattern="greet", trigger="good morning", action="wave", failure_count=2)
        await procedural.add(pattern="other", trigger="weather report", action="fetch")

        matches = await procedural.find_matching("Good morning team!")
        assert [m.action for m in matches] == ["say hi", "wave"]
        assert matches[0].id == good

    def test_trigger_matches(self):
        assert trigger_matches("deploy", "please deploy now")
        assert trigger_matches("deploy the app", "deploy the ap")
        assert not trigger_matches("deploy", "weather")
        assert not trigger_matches("", "anything")


# ---------------------------------------------------------------------------
# Prospective
# ---------------------------------------------------------------------------


class TestProspectiveStore:
    @pytest.mark.asyncio
    async def test_lifecycle(self, prospective):
        memory_id = await prospective.add(intention="Remind about standup")
        assert await prospective.complete(memory_id) is False
        assert await prospective.trigger(memory_id) is True
        assert await prospective.trigger(memory_id) is False
        assert await prospective.complete(memory_id) is True
        assert (await prospective.get(memory_id)).status == ProspectiveStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_transition_unknown_id(self, prospective):
        assert await prospective.trigger("missing") is False

    @pytest.mark.asyncio
    async def test_backward_update_refused(self, prospective):
        memory_id = await prospective.add(intention="x")
        await prospective.trigger(memory_id)
        with pytest.raises(InvalidTransitionError):
            await prospective.update(memory_id, status="pending")
        assert (await prospective.get(memory_id)).status == ProspectiveStatus.TRIGGERED

    @pytest.mark.asyncio
    async def test_query_pending(self, prospective):
        low = await prospective.add(intention="low", priority=0.2)
        high = await prospective.add(intention="high", priority=0.9)
        done = await prospective.add(intention="done")
        await prospective.trigger(done)

        pending = await prospective.query(status="pending")
        assert [m.id for m in pending] == [high, low]

    @pytest.mark.asyncio
    async def test_get_due(self, prospective, clock):
        past = clock.now - timedelta(hours=1)
        future = clock.now + timedelta(hours=1)
        due_id = await prospective.add(intention="due", trigger_time=past)
        await prospective.add(intention="later", trigger_time=future)
        await prospective.add(intention="no time")

        assert [m.id for m in await prospective.get_due()] == [due_id]
        naive_future = (clock.now + timedelta(hours=2)).replace(tzinfo=None)
        assert len(await prospective.get_due(naive_future)) == 2

    @pytest.mark.asyncio
    async def test_get_by_context(self, prospective):
        await prospective.add(intention="Ask about trip", trigger_context="travel")
        await prospective.add(intention="Other", trigger_context="cooking")
        matches = await prospective.get_by_context("talking about travel plans")
        assert [m.intention for m in matches] == ["Ask about trip"]
        assert await prospective.get_by_context("") == []


# ---------------------------------------------------------------------------
# Episodic / emotional
# ---------------------------------------------------------------------------


class TestEpisodicStore:
    @pytest.mark.asyncio
    async def test_time_range_query(self, store_dir):
        store = EpisodicMemoryStore(store_dir / "episodic.json")
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for day in range(3):
            await store.add(event=f"day {day}", timestamp=base + timedelta(days=day))

        results = await store.query(start_time=base + timedelta(days=1))
        assert [m.event for m in results] == ["day 2", "day 1"]

    @pytest.mark.asyncio
    async def test_naive_range_is_utc(self, store_dir):
        store = EpisodicMemoryStore(store_dir / "episodic.json")
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for day in range(3):
            await store.add(event=f"day {day}", timestamp=base + timedelta(days=day))

        results = await store.query(
            start_time=datetime(2026, 3, 2), end_time=datetime(2026, 3, 2, 23, 59)
        )
        assert [m.event for m in results] == ["day 1"]

    @pytest.mark.asyncio
    async def test_context_and_link(self, store_dir):
        store = EpisodicMemoryStore(store_dir / "episodic.json")
        a = await store.add(event="Chose Postgres", context=EpisodicContext(what="db", why="JSONB"))
        b = await store.add(event="Migrated schema")

        assert await store.link(a, b) is True
        assert (await store.get(a)).related_memories == [b]
        assert (await store.get(b)).related_memories == [a]
        assert await store.link(a, "missing") is False
        assert [m.id for m in await store.query(text="jsonb")] == [a]

    @pytest.mark.asyncio
    async def test_emotional_tag(self, store_dir):
        store = EpisodicMemoryStore(store_dir / "episodic.json")
        memory_id = await store.add(event="Release went out")
        assert await store.add_emotional_tag(memory_id, EmotionTag(kind=EmotionKind.JOY))
        assert (await store.get(memory_id)).emotional_tag.kind == EmotionKind.JOY


class TestEmotionalStore:
    @pytest.mark.asyncio
    async def test_strongest_first(self, store_dir):
        store = EmotionalMemoryStore(store_dir / "emotional.json")
        for intensity in ("low", "high", "medium"):
            await store.add(
                target_memory_id="ep-1",
                target_memory_type=MemoryType.EPISODIC,
                emotion=EmotionTag(kind=EmotionKind.JOY, intensity=intensity),
            )
        records = await store.get_by_target("ep-1")
        assert [m.emotion.intensity for m in records] == [
            EmotionIntensity.HIGH,
            EmotionIntensity.MEDIUM,
            EmotionIntensity.LOW,
        ]
        assert len(await store.query(min_intensity="medium")) == 2
        assert len(await store.get_by_emotion("joy")) == 3


# ---------------------------------------------------------------------------
# Working
# ---------------------------------------------------------------------------


class TestWorkingStore:
    def test_one_entry_per_scope(self, clock):
        store = WorkingMemoryStore(clock=clock)
        store.add("s1", "first")
        store.add("s1", "second")
        assert store.get_scope("s1").content == "second"
        assert len(store) == 1

    def test_expiry(self, clock):
        store = WorkingMemoryStore(default_ttl_seconds=60, clock=clock)
        store.add("s1", "short lived")
        clock.advance(seconds=61)
        assert store.get_scope("s1") is None
        assert store.clear_expired() == 1
        assert len(store) == 0

    def test_no_ttl_never_expires(self, clock):
        store = WorkingMemoryStore(default_ttl_seconds=None, clock=clock)
        store.add("s1", "forever")
        clock.advance(days=30)
        assert store.get_scope("s1").content == "forever"

    def test_clear_scope(self, clock):
        store = WorkingMemoryStore(clock=clock)
        store.add("s1", "a")
        store.add("s2", "b")
        assert store.clear_scope("s1") is True
        assert store.clear_scope("s1") is False
        assert [m.content for m in store.query()] == ["b"]

    def test_update(self, clock):
        store = WorkingMemoryStore(clock=clock)
        memory_id = store.add("s1", "draft", context={"step": 1})
        assert store.update(memory_id, content="final", scope_id="other") is True
        memory = store.get_scope("s1")
        assert memory.content == "final"
        assert memory.scope_id == "s1"
