"""
Readiness dispatch for tlsprobe's listeners and connections.

The proxy core only relies on the small `Reactor` interface below.
`SelectorReactor` implements it on top of the standard `selectors` module,
which is all the command line tool and the test suite need.
"""
from __future__ import annotations

import logging
import selectors
import time
from abc import ABCMeta
from abc import abstractmethod
from typing import Protocol

logger = logging.getLogger(__name__)


class Handler(Protocol):
    """Something the reactor can watch: a listener or a connection."""

    def fileno(self) -> int:
        ...

    def on_readable(self) -> None:
        ...

    def on_writable(self) -> None:
        ...

    def close(self) -> None:
        ...


class Reactor(metaclass=ABCMeta):
    @abstractmethod
    def register(self, handler: Handler, readable: bool, writable: bool) -> None:
        """Start watching a handler with the given interest."""

    @abstractmethod
    def set_interest(self, handler: Handler, readable: bool, writable: bool) -> None:
        """Replace the interest of an already registered handler."""

    @abstractmethod
    def deregister(self, handler: Handler) -> None:
        """Stop watching a handler. Unknown handlers are ignored."""


class SelectorReactor(Reactor):
    """
    A single-threaded reactor. Callbacks run one at a time, each to completion.

    A handler registered without any interest stays known to the reactor, but
    is not polled until it asks for readability or writability again.
    """

    def __init__(self, selector: selectors.BaseSelector | None = None):
        self.selector = selector or selectors.DefaultSelector()
        self.handlers: dict[Handler, tuple[bool, bool]] = {}
        self._should_exit = False

    def __len__(self):
        return len(self.handlers)

    def __contains__(self, handler):
        return handler in self.handlers

    def interest(self, handler: Handler) -> tuple[bool, bool]:
        """The current (readable, writable) interest of a handler."""
        return self.handlers[handler]

    def register(self, handler: Handler, readable: bool, writable: bool) -> None:
        if handler in self.handlers:
            raise ValueError(f"{handler!r} is already registered.")
        self.handlers[handler] = (False, False)
        self.set_interest(handler, readable, writable)

    def set_interest(self, handler: Handler, readable: bool, writable: bool) -> None:
        old = self.handlers[handler]
        if old == (readable, writable):
            return
        events = (selectors.EVENT_READ if readable else 0) | (
            selectors.EVENT_WRITE if writable else 0
        )
        if not any(old):
            self.selector.register(handler, events, handler)
        elif events:
            self.selector.modify(handler, events, handler)
        else:
            self.selector.unregister(handler)
        self.handlers[handler] = (readable, writable)

    def deregister(self, handler: Handler) -> None:
        interest = self.handlers.pop(handler, None)
        if interest is not None and any(interest):
            self.selector.unregister(handler)

    def run_once(self, timeout: float | None = None) -> int:
        """
        Wait for readiness once and dispatch every event reported.
        Returns the number of events dispatched.
        """
        if not any(any(i) for i in self.handlers.values()):
            # Nothing to poll, and select() without descriptors is not portable.
            if timeout:
                time.sleep(timeout)
            return 0
        dispatched = 0
        for key, mask in self.selector.select(timeout):
            handler: Handler = key.data
            if mask & selectors.EVENT_READ and self._wants(handler, readable=True):
                self._dispatch(handler, handler.on_readable)
                dispatched += 1
            if mask & selectors.EVENT_WRITE and self._wants(handler, writable=True):
                self._dispatch(handler, handler.on_writable)
                dispatched += 1
        return dispatched

    def _wants(self, handler: Handler, readable: bool = False, writable: bool = False) -> bool:
        # An earlier callback in the same turn may have closed or re-armed this handler.
        interest = self.handlers.get(handler)
        if interest is None:
            return False
        return (readable and interest[0]) or (writable and interest[1])

    def _dispatch(self, handler: Handler, callback) -> None:
        try:
            callback()
        except Exception:
            logger.error(f"Unhandled error in {handler!r}, closing it.", exc_info=True)
            self.deregister(handler)
            handler.close()

    def run(self, timeout: float = 0.1) -> None:
        """
        Dispatch events until `stop()` is called.
        """
        self._should_exit = False
        while not self._should_exit:
            self.run_once(timeout)

    def stop(self) -> None:
        self._should_exit = True

    def close(self) -> None:
        for handler in list(self.handlers):
            self.deregister(handler)
            handler.close()
        self.selector.close()
