# service.py
"""
Service gate: wait for an auxiliary service (e.g. a database) to report
healthy before the steps that depend on it run.
"""
from __future__ import annotations

import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class GateOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GateResult:
    outcome: GateOutcome
    attempts: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.outcome is GateOutcome.READY


class CommandProbe:
    """Healthy iff the health command exits 0 within `timeout` seconds."""

    def __init__(self, cmd: str, timeout: float = 5.0):
        self.cmd = cmd
        self.timeout = timeout

    def __call__(self) -> bool:
        try:
            proc = subprocess.run(
                self.cmd,
                shell=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return False
        return proc.returncode == 0

    def __repr__(self) -> str:
        return f"CommandProbe({self.cmd!r})"


class TcpProbe:
    """Healthy iff a TCP connection to host:port succeeds."""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def __call__(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False

    def __repr__(self) -> str:
        return f"TcpProbe({self.host}:{self.port})"


def await_healthy(
    probe: Callable[[], bool],
    interval: float,
    timeout: float,
    *,
    retries: int | None = None,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> GateResult:
    """
    Poll `probe` every `interval` seconds until it succeeds.

    Gives up after `timeout` seconds, or after `retries` failed probes when
    given. A probe that raises counts as unhealthy. Waiting between probes
    returns early if `cancel` is set.
    """
    if interval <= 0:
        raise ValueError("interval must be > 0")
    cancel = cancel or threading.Event()

    started = clock()
    deadline = started + timeout
    attempts = 0

    while True:
        if cancel.is_set():
            return GateResult(GateOutcome.CANCELLED, attempts, clock() - started)

        attempts += 1
        try:
            healthy = bool(probe())
        except Exception:
            healthy = False
        if healthy:
            return GateResult(GateOutcome.READY, attempts, clock() - started)

        if retries is not None and attempts >= retries:
            break
        remaining = deadline - clock()
        if remaining <= 0:
            break
        if cancel.wait(min(interval, remaining)):
            return GateResult(GateOutcome.CANCELLED, attempts, clock() - started)
        if clock() >= deadline:
            break

    return GateResult(GateOutcome.TIMED_OUT, attempts, clock() - started)
