import asyncio

from toolgen import reveal as reveal_mod
from toolgen.reveal import ProgressiveRevealer


async def _collect(it):
    return [p async for p in it]


def test_reveal_emits_growing_prefixes_ending_on_full_text():
    text = "Hello world"
    prefixes = asyncio.run(_collect(ProgressiveRevealer(tick_ms=0).reveal(text)))
    assert prefixes == [text[:i] for i in range(1, len(text) + 1)]
    assert prefixes[-1] == text
    assert prefixes.count(text) == 1


def test_reveal_with_larger_step_still_lands_on_full_text():
    prefixes = asyncio.run(_collect(ProgressiveRevealer(tick_ms=0, step=4).reveal("abcdefghij")))
    assert prefixes == ["abcd", "abcdefgh", "abcdefghij"]


def test_empty_text_yields_single_empty_value():
    assert asyncio.run(_collect(ProgressiveRevealer(tick_ms=0).reveal(""))) == [""]


def test_new_reveal_supersedes_running_one():
    async def go():
        r = ProgressiveRevealer(tick_ms=0)
        first = r.reveal("first text")
        got = [await first.__anext__(), await first.__anext__()]
        second = r.reveal("other")
        rest = [p async for p in first]
        fresh = [p async for p in second]
        return got, rest, fresh, r.cursor

    got, rest, fresh, cursor = asyncio.run(go())
    assert got == ["f", "fi"]
    assert rest == []
    assert fresh == ["o", "ot", "oth", "othe", "other"]
    assert cursor.full_text == "other" and cursor.done


def test_cancel_stops_background_ticks():
    async def go():
        r = ProgressiveRevealer(tick_ms=5)
        seen = []
        task = r.start("a fairly long piece of text to reveal", seen.append)
        while len(seen) < 3:
            await asyncio.sleep(0.001)
        r.cancel()
        count = len(seen)
        await asyncio.sleep(0.05)
        return task, seen, count, r

    task, seen, count, r = asyncio.run(go())
    assert len(seen) == count
    assert task.cancelled()
    assert r.cursor is None and not r.active


def test_start_restarts_from_zero():
    async def go():
        r = ProgressiveRevealer(tick_ms=1)
        old, new = [], []
        r.start("old old old old old", old.append)
        while len(old) < 2:
            await asyncio.sleep(0.001)
        task = r.start("new", new.append)
        await task
        frozen = len(old)
        await asyncio.sleep(0.02)
        return old, new, frozen

    old, new, frozen = asyncio.run(go())
    assert new == ["n", "ne", "new"]
    assert len(old) == frozen
    assert old[-1] != "old old old old old"


def test_default_tick_comes_from_settings(monkeypatch):
    monkeypatch.setattr(reveal_mod, "REVEAL_TICK_MS", 7.5)
    assert ProgressiveRevealer().tick_ms == 7.5
