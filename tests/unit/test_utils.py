from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from shipyard.atomic import append_line, atomic_write
from shipyard.utils import BackgroundTasks, age_ms, slugify, truncate_tail, utc_now


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Fix: Login *redirect* loop!", "fix-login-redirect-loop"),
        ("???", "item"),
        ("a" * 60, "a" * 40),
    ],
)
def test_slugify(text: str, expected: str) -> None:
    assert slugify(text) == expected


def test_truncate_tail_keeps_the_end() -> None:
    assert truncate_tail("abcdef", 3) == "def"
    assert truncate_tail("abc", 10) == "abc"


def test_age_ms() -> None:
    now = utc_now()

    assert age_ms(None) is None
    assert age_ms(now - timedelta(seconds=2), now=now) == 2000
    assert age_ms(now + timedelta(seconds=2), now=now) == 0


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path) -> None:
    path = tmp_path / "deep" / "state.json"

    atomic_write(path, "one")
    atomic_write(path, "two")

    assert path.read_text() == "two"
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]


def test_append_line_terminates_each_line(tmp_path) -> None:
    path = tmp_path / "logs" / "auto.jsonl"

    append_line(path, "a")
    append_line(path, "b\n")

    assert path.read_text() == "a\nb\n"


class TestBackgroundTasks:
    async def test_finished_tasks_are_forgotten(self) -> None:
        tasks = BackgroundTasks()

        task = tasks.spawn(asyncio.sleep(0), name="noop")
        await task
        await asyncio.sleep(0)

        assert len(tasks) == 0

    async def test_shutdown_cancels_pending_tasks(self) -> None:
        tasks = BackgroundTasks()
        task = tasks.spawn(asyncio.sleep(60))

        await tasks.shutdown(timeout=1)

        assert task.cancelled()

    async def test_failed_task_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        async def _boom() -> None:
            raise RuntimeError("boom")

        tasks = BackgroundTasks()
        task = tasks.spawn(_boom(), name="boom-task")
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)

        assert "Background task boom-task failed" in caplog.text
