from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from chapterwatch.errors import CycleInProgress, NetworkFailure, SourceNotFound
from chapterwatch.models import CycleOutcome, ErrorKind, PageFacts, UpdateDecision
from chapterwatch.services.updater import chunked, decide_update
from chapterwatch.storage import SqliteSourceStore


def test_decide_update_never_moves_backwards() -> None:
    assert decide_update(12, PageFacts(chapter_num=13)) is UpdateDecision.ADVANCED
    assert decide_update(None, PageFacts(chapter_num=1)) is UpdateDecision.ADVANCED
    assert decide_update(12, PageFacts(chapter_num=12)) is UpdateDecision.NO_CHANGE
    assert decide_update(12, PageFacts(chapter_num=9)) is UpdateDecision.NO_CHANGE
    assert decide_update(12, PageFacts()) is UpdateDecision.PARSE_FAILED


def test_chunked_keeps_order_and_remainder() -> None:
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []


def test_cycle_advances_source_and_notifies_readers(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=12, readers=3))
    engine.pages["https://novels.example/n1"] = page_html(13, "Homecoming", author="Jane Doe")
    updater = make_updater()

    assert asyncio.run(updater.run_cycle()) is True

    source = store.sources["n1"]
    assert source.latest_chapter_num == 13
    assert source.latest_chapter_title == "Homecoming"
    assert source.author == "Jane Doe"
    assert source.last_checked_at is not None
    assert store.notifications == [("n1", 12, 13, "Homecoming")]

    status = updater.get_status()
    assert status.running is False
    assert status.last_run_succeeded is True
    assert status.last_run_outcome is CycleOutcome.COMPLETED
    assert (status.checked, status.updated) == (1, 1)
    assert status.next_run_at > status.last_run_finished_at
    assert status.errors == []
    # The engine is torn down once the cycle ends.
    assert engine.handles[0].closed


def test_lower_chapter_on_page_keeps_stored_number(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=20, latest_chapter_title="Finale"))
    engine.pages["https://novels.example/n1"] = page_html(18, "Earlier")
    updater = make_updater()

    asyncio.run(updater.run_cycle())

    source = store.sources["n1"]
    assert source.latest_chapter_num == 20
    assert source.latest_chapter_title == "Finale"
    assert source.last_checked_at is not None
    assert store.notifications == []
    assert updater.get_status().updated == 0


def test_missing_metadata_does_not_erase_known_values(
    tmp_path, engine, make_updater, page_html
) -> None:
    db = SqliteSourceStore(str(tmp_path / "novels.db"))
    db.connect()
    db.add_source(
        "n1", "https://novels.example/n1", latest_chapter_num=7, author="Jane Doe", genre="Fantasy"
    )
    db.record_reading("reader-1", "n1")
    engine.pages["https://novels.example/n1"] = page_html(7)
    updater = make_updater(source_store=db)

    asyncio.run(updater.run_cycle())

    source = db.get_source("n1")
    assert source.author == "Jane Doe"
    assert source.genre == "Fantasy"
    assert source.latest_chapter_num == 7
    assert source.last_checked_at is not None
    db.close()


def test_cycle_against_sqlite_notifies_each_reader(
    tmp_path, engine, make_updater, page_html
) -> None:
    db = SqliteSourceStore(str(tmp_path / "novels.db"))
    db.connect()
    db.add_source("n1", "https://novels.example/n1/chapter-12", latest_chapter_num=12)
    db.record_reading("reader-1", "n1", 10)
    db.record_reading("reader-2", "n1", 12)
    db.record_reading("reader-2", "n1", 12)
    engine.pages["https://novels.example/n1"] = page_html(
        13, "Homecoming", genres="Fantasy, Adventure"
    )
    updater = make_updater(source_store=db)

    asyncio.run(updater.run_cycle())

    source = db.get_source("n1")
    assert (source.latest_chapter_num, source.latest_chapter_title) == (13, "Homecoming")
    assert source.genre == "Fantasy, Adventure"
    notifications = db.list_notifications()
    assert sorted(n["user_id"] for n in notifications) == ["reader-1", "reader-2"]
    assert {(n["previous_chapter"], n["new_chapter"]) for n in notifications} == {(12, 13)}
    # The chapter suffix is stripped so the novel's index page is requested.
    assert engine.requests == ["https://novels.example/n1"]
    db.close()


def test_parse_failure_is_recorded_and_skipped(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=4, readers=2))
    store.add(source_factory("n2", chapter=1, readers=1))
    engine.pages["https://novels.example/n1"] = page_html(None)
    engine.pages["https://novels.example/n2"] = page_html(2)
    updater = make_updater()

    asyncio.run(updater.run_cycle())

    status = updater.get_status()
    assert status.last_run_succeeded is True
    assert (status.checked, status.updated) == (2, 1)
    assert [(e.source_id, e.kind) for e in status.errors] == [("n1", ErrorKind.PARSE)]
    assert store.sources["n1"].latest_chapter_num == 4
    assert store.sources["n2"].latest_chapter_num == 2


def test_one_failing_source_does_not_sink_the_cycle(
    store, engine, make_updater, source_factory, page_html
) -> None:
    for index in range(1, 6):
        source_id = f"n{index}"
        store.add(source_factory(source_id, chapter=10, readers=10 - index))
        engine.pages[f"https://novels.example/{source_id}"] = page_html(11)
    store.fail_on.add("n3")
    updater = make_updater(batch_size=2)

    asyncio.run(updater.run_cycle())

    status = updater.get_status()
    assert status.last_run_succeeded is True
    assert status.last_run_outcome is CycleOutcome.COMPLETED
    assert (status.checked, status.updated) == (5, 4)
    assert [(e.source_id, e.kind) for e in status.errors] == [("n3", ErrorKind.STORAGE)]
    assert store.sources["n3"].latest_chapter_num == 10
    assert store.sources["n4"].latest_chapter_num == 11
    assert store.sources["n5"].latest_chapter_num == 11


def test_unexpected_exception_is_contained_per_source(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=1, readers=2))
    store.add(source_factory("n2", chapter=1, readers=1))
    engine.pages["https://novels.example/n1"] = RuntimeError("boom")
    engine.pages["https://novels.example/n2"] = page_html(2)
    updater = make_updater()

    asyncio.run(updater.run_cycle())

    status = updater.get_status()
    assert status.updated == 1
    assert status.errors[0].kind is ErrorKind.INTERNAL
    assert status.errors[0].source_id == "n1"


def test_batches_pause_between_but_not_after_last(
    store, engine, make_updater, source_factory, page_html, monkeypatch
) -> None:
    for index in range(5):
        store.add(source_factory(f"n{index}", chapter=1, readers=5 - index))
        engine.pages[f"https://novels.example/n{index}"] = page_html(1)
    updater = make_updater(batch_size=2, batch_interval_seconds=60)

    pauses = []

    async def record_pause(seconds: float) -> None:
        pauses.append(seconds)

    monkeypatch.setattr(updater, "_pause", record_pause)
    asyncio.run(updater.run_cycle())

    assert pauses == [60, 60]
    assert len(engine.requests) == 5


def test_max_sources_per_cycle_limits_selection(
    store, engine, make_updater, source_factory, page_html
) -> None:
    for index in range(4):
        store.add(source_factory(f"n{index}", chapter=1, readers=4 - index))
        engine.pages[f"https://novels.example/n{index}"] = page_html(1)
    updater = make_updater(max_sources_per_cycle=3)

    asyncio.run(updater.run_cycle())

    assert engine.requests == [f"https://novels.example/n{index}" for index in range(3)]


def test_origin_block_aborts_cycle_and_blocks_next_one(
    store, engine, clock, make_updater, source_factory, page_html
) -> None:
    for index in range(1, 4):
        store.add(source_factory(f"n{index}", chapter=1, readers=4 - index))
        engine.pages[f"https://novels.example/n{index}"] = page_html(2)
    engine.pages["https://novels.example/n1"] = 429
    updater = make_updater()

    asyncio.run(updater.run_cycle())

    status = updater.get_status()
    assert status.last_run_outcome is CycleOutcome.BLOCKED
    assert status.last_run_succeeded is True
    assert status.checked == 1
    assert status.blocked_until is not None
    assert engine.requests == ["https://novels.example/n1"]
    assert status.errors[0].kind is ErrorKind.ORIGIN_BLOCKED

    # Still inside the cooldown: nothing is fetched.
    clock.advance(60)
    asyncio.run(updater.run_cycle())
    assert engine.requests == ["https://novels.example/n1"]
    assert updater.get_status().last_run_outcome is CycleOutcome.BLOCKED

    # After the short cooldown the origin is contacted again.
    engine.pages["https://novels.example/n1"] = page_html(2)
    clock.advance(updater.config.short_cooldown_seconds)
    asyncio.run(updater.run_cycle())
    assert len(engine.requests) == 4
    assert updater.get_status().last_run_outcome is CycleOutcome.COMPLETED


def test_overlapping_triggers_are_refused(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=1))
    engine.pages["https://novels.example/n1"] = page_html(2)
    updater = make_updater()

    async def scenario() -> None:
        engine.gate = asyncio.Event()
        first = asyncio.create_task(updater.run_cycle())
        while not engine.requests:
            await asyncio.sleep(0)

        assert updater.busy
        assert updater.get_status().running is True
        assert updater.get_status().checked == 1
        assert await updater.run_cycle() is False
        assert updater.get_status().checked == 1
        assert updater.trigger_cycle() is False
        with pytest.raises(CycleInProgress):
            await updater.check_source("n1")

        engine.gate.set()
        assert await first is True

    asyncio.run(scenario())

    assert engine.requests == ["https://novels.example/n1"]
    assert updater.busy is False
    assert updater.get_status().updated == 1


def test_guard_is_released_after_fatal_failure(
    store, engine, make_updater, source_factory, page_html, monkeypatch
) -> None:
    store.add(source_factory("n1", chapter=1))
    engine.pages["https://novels.example/n1"] = page_html(2)
    updater = make_updater()

    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(store, "list_stale_sources", broken)
    assert asyncio.run(updater.run_cycle()) is True

    status = updater.get_status()
    assert status.running is False
    assert status.last_run_succeeded is False
    assert status.last_run_outcome is CycleOutcome.FAILED
    assert status.errors[-1].kind is ErrorKind.FATAL
    assert updater.busy is False

    monkeypatch.undo()
    asyncio.run(updater.run_cycle())
    status = updater.get_status()
    assert status.last_run_succeeded is True
    assert status.updated == 1
    # Counters reset per cycle while the error log persists.
    assert status.errors[0].kind is ErrorKind.FATAL


def test_stop_request_ends_cycle_after_current_source(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=1, readers=2))
    store.add(source_factory("n2", chapter=1, readers=1))
    engine.pages["https://novels.example/n1"] = page_html(2)
    engine.pages["https://novels.example/n2"] = page_html(2)
    updater = make_updater()

    async def scenario() -> None:
        engine.gate = asyncio.Event()
        cycle = asyncio.create_task(updater.run_cycle())
        while not engine.requests:
            await asyncio.sleep(0)
        updater.request_stop()
        engine.gate.set()
        await cycle

    asyncio.run(scenario())

    status = updater.get_status()
    assert status.last_run_outcome is CycleOutcome.STOPPED
    assert status.stop_requested is True
    assert status.checked == 1
    assert store.sources["n1"].latest_chapter_num == 2
    assert store.sources["n2"].latest_chapter_num == 1
    assert engine.handles[0].closed


def test_stop_interrupts_pause_between_batches(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=1, readers=2))
    store.add(source_factory("n2", chapter=1, readers=1))
    engine.pages["https://novels.example/n1"] = page_html(1)
    engine.pages["https://novels.example/n2"] = page_html(1)
    updater = make_updater(batch_size=1, batch_interval_seconds=3600)

    async def scenario() -> None:
        cycle = asyncio.create_task(updater.run_cycle())
        while not engine.requests:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        updater.request_stop()
        await asyncio.wait_for(cycle, timeout=5)

    asyncio.run(scenario())

    assert updater.get_status().last_run_outcome is CycleOutcome.STOPPED
    assert engine.requests == ["https://novels.example/n1"]


def test_check_source_ignores_staleness(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=3, last_checked_at=datetime.now(UTC)))
    engine.pages["https://novels.example/n1"] = page_html(4, "Return")
    updater = make_updater()

    result = asyncio.run(updater.check_source("n1"))

    assert result.is_new is True
    assert (result.previous, result.current, result.title) == (3, 4, "Return")
    assert result.notified == 1
    assert updater.busy is False
    assert engine.handles[0].closed


def test_check_source_errors(store, engine, make_updater, source_factory) -> None:
    store.add(source_factory("n1", chapter=3))
    engine.pages["https://novels.example/n1"] = 500
    updater = make_updater()

    with pytest.raises(SourceNotFound):
        asyncio.run(updater.check_source("missing"))
    with pytest.raises(NetworkFailure):
        asyncio.run(updater.check_source("n1"))

    errors = updater.get_status().errors
    assert [(e.source_id, e.kind) for e in errors] == [("n1", ErrorKind.NETWORK)]
    assert updater.busy is False


def test_force_stale_all_resets_and_triggers(
    store, engine, make_updater, source_factory, page_html
) -> None:
    store.add(source_factory("n1", chapter=1, last_checked_at=datetime.now(UTC)))
    store.add(source_factory("n2", chapter=1, last_checked_at=datetime.now(UTC)))
    engine.pages["https://novels.example/n1"] = page_html(2)
    engine.pages["https://novels.example/n2"] = page_html(1)
    updater = make_updater()

    async def scenario():
        reset, accepted = updater.force_stale_all()
        await updater.current_task
        return reset, accepted

    assert asyncio.run(scenario()) == (2, True)
    assert len(engine.requests) == 2
    assert updater.get_status().updated == 1


def test_status_snapshot_is_a_copy(store, make_updater) -> None:
    updater = make_updater()
    updater.errors.record(ErrorKind.NETWORK, "timeout", source_id="n1")

    status = updater.get_status()
    status.errors.clear()
    status.checked = 99

    fresh = updater.get_status()
    assert len(fresh.errors) == 1
    assert fresh.checked == 0
