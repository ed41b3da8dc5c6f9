"""Bridge between synchronous Flask handlers and the asyncio core.

One daemon thread runs one event loop for the whole process. Handlers
submit coroutines with ``run()`` and block on the result; the instance
cache, tag-propagation tasks and SSH host locks therefore all live on a
single loop.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Coroutine
from typing import Any, Optional, TypeVar

from infra.logging_config import StructuredLogger
from services.console import ConsoleServices, build_console_services

log = StructuredLogger(__name__)

T = TypeVar("T")


class LoopThread:
    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._loop.is_running():
                return self._loop
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _serve() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()

            self._thread = threading.Thread(target=_serve, name="console-loop", daemon=True)
            self._thread.start()
            ready.wait()
            self._loop = loop
            log.debug("event_loop_started")
            return loop

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure())
        return future.result(timeout)

    def stop(self) -> None:
        with self._lock:
            loop, self._loop = self._loop, None
            thread, self._thread = self._thread, None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5)
        loop.close()


_LOOP = LoopThread()
_SERVICES: Optional[ConsoleServices] = None
_SERVICES_LOCK = threading.Lock()


def run(coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
    """Run ``coro`` on the shared loop and wait for its result."""
    return _LOOP.run(coro, timeout)


def get_services() -> ConsoleServices:
    global _SERVICES
    with _SERVICES_LOCK:
        if _SERVICES is None:
            _SERVICES = build_console_services()
        return _SERVICES


def set_services(services: Optional[ConsoleServices]) -> None:
    """Install a prebuilt bag (tests) or drop the cached one."""
    global _SERVICES
    with _SERVICES_LOCK:
        _SERVICES = services


def shutdown() -> None:
    services = _SERVICES
    if services is not None:
        run(services.aclose(), timeout=10)
    set_services(None)
    _LOOP.stop()


__all__ = ["LoopThread", "get_services", "run", "set_services", "shutdown"]
