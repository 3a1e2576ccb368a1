import threading

import pytest
from fastapi.testclient import TestClient

from main import create_app
from scheduler import PeriodicSweeper


class FakeSession:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_run_once_hands_job_a_fresh_session():
    sessions = []

    def factory():
        sessions.append(FakeSession())
        return sessions[-1]

    sweeper = PeriodicSweeper("test", 60, factory, lambda session: ("swept", session))
    result = sweeper.run_once()

    assert result == ("swept", sessions[0])
    assert sessions[0].closed


def test_run_once_closes_session_when_job_fails():
    session = FakeSession()

    def boom(_):
        raise RuntimeError("db down")

    sweeper = PeriodicSweeper("test", 60, lambda: session, boom)
    with pytest.raises(RuntimeError):
        sweeper.run_once()
    assert session.closed


def test_loop_keeps_running_after_failures():
    calls = []
    done = threading.Event()

    def job(session):
        calls.append(session)
        if len(calls) == 1:
            raise RuntimeError("transient")
        done.set()

    sweeper = PeriodicSweeper("test", 0.01, FakeSession, job)
    sweeper.start()
    try:
        assert done.wait(5)
        assert sweeper.running
    finally:
        sweeper.stop(timeout=5)

    assert len(calls) >= 2
    assert not sweeper.running


def test_start_is_idempotent_and_stop_without_start_is_safe():
    sweeper = PeriodicSweeper("test", 60, FakeSession, lambda session: None)
    sweeper.stop()
    sweeper.start()
    thread = sweeper._thread
    sweeper.start()
    assert sweeper._thread is thread
    sweeper.stop(timeout=5)
    assert not sweeper.running


def test_app_starts_and_stops_sweepers(settings, notifier, session_factory):
    settings.enable_schedulers = True
    app = create_app(settings=settings, notifier=notifier, session_factory=session_factory)
    with TestClient(app) as client:
        assert app.state.cart_sweeper.running
        assert app.state.order_sweeper.running
        assert client.get("/health").json() == {"status": "healthy"}
    assert not app.state.cart_sweeper.running
    assert not app.state.order_sweeper.running
