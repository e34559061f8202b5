"""
End-to-end session lifecycle: real pty processes, in-memory store and
destination, full dispatch path
"""
import asyncio
import time

import pytest

from threadwire.models.session import CreateSessionOptions, SessionStatus
from threadwire.services.dispatch_router import DispatchRouter
from threadwire.services.process_wrapper import ProcessWrapper
from threadwire.services.session_manager import SessionManager


pytestmark = pytest.mark.integration


def make_stack(store, audit_log, projects, destination, settings, command):
    def factory(session_id, project_path):
        return ProcessWrapper(session_id, project_path, command=command, settings=settings)

    manager = SessionManager(store, audit_log, projects, settings=settings, process_factory=factory)
    router = DispatchRouter(manager, destination, settings)
    return manager, router


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def options():
    return CreateSessionOptions(
        user_id="U1",
        user_name="alice",
        channel_id="C1",
        message_ts="1700000000.000100",
    )


class TestSessionLifecycle:
    """Drive sessions from creation to termination"""

    @pytest.mark.asyncio
    async def test_input_round_trip_and_explicit_stop(self, store, audit_log, projects, destination, settings):
        manager, router = make_stack(store, audit_log, projects, destination, settings, ["cat"])
        terminated = []
        manager.on_session_terminated.connect(lambda sid, code: terminated.append(code))

        session = await manager.create_session(options())
        await manager.send_input("U1", "hello from the thread")

        await wait_until(lambda: any("hello from the thread" in t for t in destination.posted_texts))
        assert all(thread == "1700000000.000100" for _, thread, _ in destination.posts)

        assert await manager.terminate_session("U1") is True
        await wait_until(lambda: terminated)

        await wait_until(lambda: any(t.startswith("Session ended (exit code:") for t in destination.posted_texts))
        assert store.records == {}
        assert store.user_index == {}
        assert audit_log.started == [session.id]
        assert (session.id, "user", "hello from the thread") in audit_log.messages
        assert await manager.get_session_for_user("U1") is None

        router.close()

    @pytest.mark.asyncio
    async def test_process_exit_ends_session(self, store, audit_log, projects, destination, settings):
        manager, router = make_stack(
            store, audit_log, projects, destination, settings,
            ["sh", "-c", "sleep 0.3; echo goodbye; exit 4"],
        )

        session = await manager.create_session(options())
        assert store.records[session.id].status == SessionStatus.STARTING

        await wait_until(lambda: "Session ended (exit code: 4)" in destination.posted_texts)

        assert destination.posted_texts == ["goodbye", "Session ended (exit code: 4)"]
        assert store.records == {}
        assert audit_log.ended == [(session.id, 4)]
        assert manager.active_session_count == 0

        router.close()

    @pytest.mark.asyncio
    async def test_prompt_round_trip(self, store, audit_log, projects, destination, settings):
        script = "printf 'Allow Bash tool? [y/n] '; read answer; echo \"answered $answer\"; sleep 0.3"
        manager, router = make_stack(store, audit_log, projects, destination, settings, ["sh", "-c", script])

        session = await manager.create_session(options())

        await wait_until(lambda: any("Reply with `/y` to accept" in t for t in destination.posted_texts))
        await wait_until(lambda: store.records.get(session.id) is not None
                         and store.records[session.id].status == SessionStatus.WAITING_INPUT)

        await manager.send_control("U1", "accept")
        await manager.send_input("U1", "")

        await wait_until(lambda: any("answered y" in t for t in destination.posted_texts))
        await wait_until(lambda: manager.active_session_count == 0)

        router.close()

    @pytest.mark.asyncio
    async def test_shutdown_stops_live_sessions(self, store, audit_log, projects, destination, settings):
        manager, router = make_stack(store, audit_log, projects, destination, settings, ["cat"])
        await manager.create_session(options())

        await manager.shutdown()

        assert manager.active_session_count == 0
        await wait_until(lambda: any(t.startswith("Session ended") for t in destination.posted_texts))

        router.close()
