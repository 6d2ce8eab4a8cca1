"""Process supervision: slot rollover hand-off and graceful shutdown.

Each 15-minute market is served by a fresh process. At a slot boundary the
running monitor releases its instance lock, launches an identical copy of
itself (same interpreter, arguments, environment and working directory),
detaches it, and exits with status 0. No in-memory state (token cache,
executed-leg sets) survives into the next market.

Usage::

    action = decide_slot_action(last_slot, slot, auto_resolve=True, restart_on_rollover=True)
    if action is SlotAction.RESTART:
        lifecycle.hand_off()
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from enum import Enum
from typing import Any, Callable, Sequence

from updown_arb.framework.instance_lock import InstanceLock

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Slot transition decision
# ---------------------------------------------------------------------------


class SlotAction(str, Enum):
    """What the poll loop does when it observes the current slot key."""

    NONE = "none"  # Same slot, or a fixed ticker was supplied.
    REFRESH = "refresh"  # Re-resolve the ticker and keep polling.
    RESTART = "restart"  # Hand off to a replacement process.


def decide_slot_action(
    previous_slot: str,
    current_slot: str,
    auto_resolve: bool,
    restart_on_rollover: bool,
) -> SlotAction:
    if not auto_resolve or previous_slot == current_slot:
        return SlotAction.NONE
    if restart_on_rollover:
        return SlotAction.RESTART
    return SlotAction.REFRESH


# ---------------------------------------------------------------------------
# Relaunch
# ---------------------------------------------------------------------------


class ProcessRelauncher:
    """Starts a detached copy of the current process.

    Parameters
    ----------
    argv:
        Full command line of the replacement. Defaults to the interpreter
        plus the original arguments (``sys.orig_argv``), which preserves
        ``-m updown_arb`` style invocations.
    popen:
        Process factory, ``subprocess.Popen`` by default.
    """

    def __init__(
        self,
        argv: Sequence[str] | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self._argv = list(argv) if argv is not None else self.current_command()
        self._popen = popen

    @staticmethod
    def current_command() -> list[str]:
        original = getattr(sys, "orig_argv", None)
        if original:
            return [sys.executable, *original[1:]]
        return [sys.executable, *sys.argv]

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    def spawn_detached(self) -> Any:
        LOGGER.info("launching replacement process: %s", " ".join(self._argv))
        return self._popen(
            self._argv,
            cwd=os.getcwd(),
            env=os.environ.copy(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


class ProcessLifecycleManager:
    """Hands the market over to a fresh process at a slot boundary.

    The lock is released before the replacement starts so it can acquire
    it. The caller is expected to exit with status 0 once
    :attr:`handed_off` is set.
    """

    def __init__(self, lock: InstanceLock, relauncher: ProcessRelauncher | None = None) -> None:
        self._lock = lock
        self._relauncher = relauncher or ProcessRelauncher()
        self._handed_off = False

    @property
    def handed_off(self) -> bool:
        return self._handed_off

    def hand_off(self) -> None:
        if self._handed_off:
            return
        self._lock.release()
        self._relauncher.spawn_detached()
        self._handed_off = True
        LOGGER.info("slot rollover: handed off to replacement process")


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------


class GracefulShutdown:
    """Coordinates graceful shutdown of the monitor.

    Registers signal handlers for SIGINT and SIGTERM. When a shutdown
    signal is received, the registered cleanup callbacks run in order.
    A poll already in flight finishes on its own; nothing is interrupted.
    """

    def __init__(self) -> None:
        self._shutdown_requested = False
        self._callbacks: list[tuple[str, Callable[[], None]]] = []
        self._signals_installed = False

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self, reason: str = "manual") -> list[tuple[str, bool]]:
        """Request a graceful shutdown. Callbacks run only on the first request."""
        if self._shutdown_requested:
            return []
        self._shutdown_requested = True
        LOGGER.info("Graceful shutdown requested: %s", reason)
        return self.run_callbacks()

    def register_callback(self, name: str, callback: Callable[[], None]) -> None:
        """Register a cleanup callback to run on shutdown."""
        self._callbacks.append((name, callback))

    def run_callbacks(self) -> list[tuple[str, bool]]:
        """Run all registered callbacks. Returns list of (name, success)."""
        results: list[tuple[str, bool]] = []
        for name, callback in self._callbacks:
            try:
                callback()
                results.append((name, True))
                LOGGER.info("Shutdown callback '%s' completed", name)
            except Exception as exc:
                results.append((name, False))
                LOGGER.error("Shutdown callback '%s' failed: %s", name, exc)
        return results

    def install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers. Safe to call multiple times."""
        if self._signals_installed:
            return

        def _handler(signum: int, frame: Any) -> None:
            sig_name = signal.Signals(signum).name
            self.request_shutdown(reason=f"signal {sig_name}")

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        self._signals_installed = True
