"""Abort signals for batch cancellation and per-call deadlines.

A signal is a DotDict with ``aborted``/``reason`` fields, listener hooks and an
awaitable ``wait()``. Controllers own a signal and expose ``abort(reason)``.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Awaitable, Callable

from callable_engine.dotdict import DotDict
from callable_engine.errors import CancelledCallError


def _create_abort_signal() -> DotDict:
    event = asyncio.Event()
    listeners: list[Callable[[], None]] = []
    signal = DotDict({"aborted": False, "reason": None})

    def remove_event_listener(callback: Callable[[], None]) -> None:
        nonlocal listeners
        listeners = [listener for listener in listeners if listener is not callback]

    def add_event_listener(callback: Callable[[], None], *, once: bool = False) -> Callable[[], None]:
        if once:
            def once_callback() -> None:
                try:
                    callback()
                finally:
                    remove_event_listener(once_callback)

            listeners.append(once_callback)
            return once_callback

        listeners.append(callback)
        return callback

    def abort(reason: Any = None) -> None:
        if signal.aborted:
            return

        signal.aborted = True
        signal.reason = reason
        event.set()

        for listener in list(listeners):
            try:
                listener()
            except Exception:
                # Listener failures must not break cancellation propagation.
                continue

    async def wait() -> None:
        await event.wait()

    signal.add_event_listener = add_event_listener
    signal.remove_event_listener = remove_event_listener
    signal.abort = abort
    signal.wait = wait
    return signal


def create_abort_controller() -> DotDict:
    """Create an abort controller; pass ``controller.signal`` to ``run_batch``."""
    signal = _create_abort_signal()

    def abort(reason: Any = None) -> None:
        signal.abort(reason)

    return DotDict({"signal": signal, "abort": abort})


def signal_aborted(signal: Any) -> bool:
    if signal is None:
        return False
    return bool(getattr(signal, "aborted", False))


async def _wait_for_abort(signal: Any) -> None:
    if signal is None:
        await asyncio.Future()
        return
    await signal.wait()


def create_run_signal(timeout_ms: int, external_signal: Any = None) -> Any:
    """Derive a per-attempt signal that aborts on ``timeout_ms`` or on the external signal."""
    controller = create_abort_controller()
    timeout_handle: asyncio.TimerHandle | None = None
    timed_out = False

    def on_external_abort() -> None:
        controller.abort(getattr(external_signal, "reason", None))

    listener: Callable[[], None] | None = None
    if signal_aborted(external_signal):
        on_external_abort()
    elif external_signal is not None:
        listener = external_signal.add_event_listener(on_external_abort, once=True)

    if timeout_ms > 0:
        loop = asyncio.get_running_loop()

        def on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            controller.abort("timeout")

        timeout_handle = loop.call_later(timeout_ms / 1000.0, on_timeout)

    def cleanup() -> None:
        if timeout_handle:
            timeout_handle.cancel()
        if external_signal is not None and listener is not None:
            external_signal.remove_event_listener(listener)

    return SimpleNamespace(signal=controller.signal, cleanup=cleanup, did_timeout=lambda: timed_out)


async def race_with_abort(signal: Any, fn: Callable[[], Awaitable[Any]], grace_s: float = 0.25) -> Any:
    """Run ``fn`` until it finishes or ``signal`` aborts.

    On abort the task running ``fn`` is cancelled and given at most ``grace_s``
    to unwind before CancelledCallError is raised.
    """
    if signal_aborted(signal):
        raise CancelledCallError()

    fn_task = asyncio.ensure_future(fn())
    abort_task = asyncio.create_task(_wait_for_abort(signal))

    try:
        done, _pending = await asyncio.wait({fn_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        fn_task.cancel()
        abort_task.cancel()
        raise

    if fn_task in done:
        abort_task.cancel()
        return fn_task.result()

    fn_task.cancel()
    await asyncio.wait({fn_task}, timeout=grace_s)
    if fn_task.done() and not fn_task.cancelled():
        # Retrieve the outcome so a late failure is not reported as unhandled.
        fn_task.exception()
    raise CancelledCallError()


async def acquire_with_abort(primitive: asyncio.Lock | asyncio.Semaphore, signal: Any = None) -> None:
    """Acquire ``primitive`` unless ``signal`` aborts first.

    Raises CancelledCallError on abort; the primitive is never left held in
    that case.
    """
    if signal is None:
        await primitive.acquire()
        return
    if signal_aborted(signal):
        raise CancelledCallError()

    acquire_task = asyncio.ensure_future(primitive.acquire())
    abort_task = asyncio.create_task(_wait_for_abort(signal))

    try:
        done, _pending = await asyncio.wait({acquire_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        acquire_task.cancel()
        abort_task.cancel()
        raise

    abort_task.cancel()
    if acquire_task in done:
        return

    acquire_task.cancel()
    await asyncio.wait({acquire_task})
    if not acquire_task.cancelled():
        # Acquired between the abort and the cancel request.
        primitive.release()
    raise CancelledCallError()


async def sleep_with_abort(ms: int, signal: Any = None) -> None:
    if ms <= 0:
        if signal_aborted(signal):
            raise CancelledCallError()
        return

    sleep_task = asyncio.create_task(asyncio.sleep(ms / 1000.0))
    abort_task = asyncio.create_task(_wait_for_abort(signal))

    try:
        done, _pending = await asyncio.wait({sleep_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        sleep_task.cancel()
        abort_task.cancel()
        raise

    if abort_task in done:
        sleep_task.cancel()
        raise CancelledCallError()

    abort_task.cancel()
