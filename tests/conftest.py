"""Shared test fixtures for the relayci test suite."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from relayci.ui.console import Console, set_console


class FakeExecutor:
    """
    Step executor that never touches the shell.

    Commands map to exit codes (default 0). A command listed in `gates`
    blocks until the matching event is set, which lets tests hold a job
    in-flight at a known step.
    """

    def __init__(
        self,
        codes: Optional[Dict[str, int]] = None,
        gates: Optional[Dict[str, threading.Event]] = None,
        on_call: Optional[Callable[[str], None]] = None,
    ):
        self.codes = codes or {}
        self.gates = gates or {}
        self.on_call = on_call
        self.calls: List[Tuple[str, Path, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def __call__(self, command, cwd, env, timeout):
        with self._lock:
            self.calls.append((command, cwd, dict(env)))
        if self.on_call is not None:
            self.on_call(command)
        gate = self.gates.get(command)
        if gate is not None:
            assert gate.wait(timeout=10), f"gate for {command!r} never opened"
        return self.codes.get(command, 0), f"ran {command}"

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [c for c, _cwd, _env in self.calls]


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A small checkout with a lock file and a build directory."""
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "Cargo.lock").write_text("[[package]]\nname = \"demo\"\nversion = \"0.1.0\"\n")
    return ws
