"""
Tests for the bounded background task runner.
"""
import threading

import pytest
from flask import Flask, current_app

from everly.services.background import BackgroundTaskRunner


@pytest.fixture
def flask_app():
    return Flask(__name__)


class TestInlineRunner:

    def test_runs_in_app_context(self, flask_app):
        seen = []
        runner = BackgroundTaskRunner(flask_app, inline=True)

        assert runner.submit("capture", lambda: seen.append(current_app.name)) is True
        assert seen == [flask_app.name]
        assert runner.tracker.snapshot()["total_completed"] == 1

    def test_failure_is_contained_and_counted(self, flask_app):
        runner = BackgroundTaskRunner(flask_app, inline=True)

        def boom():
            raise RuntimeError("metric store down")

        assert runner.submit("boom", boom) is True
        stats = runner.tracker.snapshot()
        assert stats["total_failed"] == 1
        assert stats["active_count"] == 0

        # The slot was released, so the runner still accepts work
        assert runner.submit("ok", lambda: None) is True


class TestThreadedRunner:

    def test_rejects_when_saturated(self, flask_app):
        release = threading.Event()
        started = threading.Event()
        runner = BackgroundTaskRunner(flask_app, max_workers=1, max_pending=1)

        def blocking():
            started.set()
            release.wait(timeout=5)

        try:
            assert runner.submit("blocking", blocking) is True
            assert started.wait(timeout=5)
            assert runner.submit("overflow", lambda: None) is False
            assert runner.tracker.snapshot()["total_rejected"] == 1
        finally:
            release.set()
            runner.shutdown(wait=True)

        assert runner.tracker.snapshot()["total_completed"] == 1

    def test_passes_arguments(self, flask_app):
        results = []
        runner = BackgroundTaskRunner(flask_app, max_workers=2)
        try:
            runner.submit("append", results.append, "value")
        finally:
            runner.shutdown(wait=True)
        assert results == ["value"]
