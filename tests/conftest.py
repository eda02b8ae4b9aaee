"""
Shared pytest fixtures.

The supervisor is exercised against FakeProcessManager, which hands out
FakeProcess handles whose output and exit are driven by the test, so state
machine tests run synchronously without ffmpeg.
"""

import os
import tempfile

# Keep the module-level default config out of the user's home directory.
os.environ.setdefault("RELAY_DATA_DIR", tempfile.mkdtemp(prefix="relay-supervisor-tests-"))

import pytest

from relay_supervisor.config import Config
from relay_supervisor.document import RunState
from relay_supervisor.events import EventBroadcaster
from relay_supervisor.slots import can_transition
from relay_supervisor.store import StateStore
from relay_supervisor.supervisor import RelaySupervisor

STATS_LINE = "frame=  250 fps= 25 q=-1.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=1.00x\r"


class FakeProcess:
    """Stands in for a ProcessHandle."""

    def __init__(self, name, argv, on_output, on_exit, pid):
        self.name = name
        self.argv = argv
        self.pid = pid
        self._on_output = on_output
        self._on_exit = on_exit
        self.terminated = False
        self.exited = False

    def emit(self, text: str):
        self._on_output(text)

    def exit(self, returncode=1):
        if self.exited:
            return
        self.exited = True
        self._on_exit(returncode)

    def wait_closed(self, timeout=None) -> bool:
        return self.exited


class FakeProcessManager:
    """Records spawns; terminate() makes the process exit immediately."""

    def __init__(self):
        self.spawned: list[FakeProcess] = []
        self.spawn_error = None
        self.exit_on_terminate = True

    def spawn(self, name, argv, on_output, on_exit):
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(name, argv, on_output, on_exit, pid=10000 + len(self.spawned))
        self.spawned.append(process)
        return process

    def terminate(self, handle, timeout=None, wait=False):
        handle.terminated = True
        if self.exit_on_terminate:
            handle.exit(-15)

    def stats(self, handle):
        return {"pid": handle.pid, "cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0}

    @property
    def last(self) -> FakeProcess:
        return self.spawned[-1]


def drain(subscription) -> list[dict]:
    """Everything currently queued on a subscription."""
    events = []
    while True:
        event = subscription.get(timeout=0)
        if event is None:
            return events
        events.append(event.to_dict())


def run_states(events: list[dict], slot: str) -> list[str]:
    """The sequence of distinct run states a slot went through."""
    states = []
    for event in events:
        if event["type"] == "state" and event["slot"] == slot:
            if not states or states[-1] != event["runState"]:
                states.append(event["runState"])
    return states


def assert_legal_path(states: list[str]):
    for current, target in zip(states, states[1:]):
        assert can_transition(RunState(current), RunState(target)), f"{current} -> {target}"


@pytest.fixture
def cfg(tmp_path):
    return Config(
        data_dir=tmp_path,
        restart_delay=0,
        max_restart_attempts=3,
        stable_run_seconds=30,
        start_timeout=0,
        stop_timeout=1,
        command_lock_timeout=0.05,
        progress_persist_interval=0,
        ffmpeg_bin="ffmpeg",
    )


@pytest.fixture
def store(cfg):
    return StateStore(cfg.state_path)


@pytest.fixture
def broadcaster():
    return EventBroadcaster(queue_size=1000)


@pytest.fixture
def processes():
    return FakeProcessManager()


@pytest.fixture
def supervisor(cfg, store, broadcaster, processes):
    supervisor = RelaySupervisor(cfg, store, broadcaster, process_manager=processes)
    supervisor.load()
    return supervisor


@pytest.fixture
def events(broadcaster, supervisor):
    subscription = broadcaster.subscribe()
    subscription.get(timeout=0)  # initial snapshot
    yield subscription
    subscription.close()
