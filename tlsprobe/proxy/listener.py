from __future__ import annotations

import logging
import socket
from collections.abc import Callable

from tlsprobe.net import tls
from tlsprobe.proxy.connection import TLSConnection
from tlsprobe.reactor import Reactor
from tlsprobe.utils import human

logger = logging.getLogger(__name__)


class ListenerAcceptor:
    """
    Accepts redirected TCP connections and hands each of them to a new TLSConnection.

    The listener only ever accepts one connection per readiness event. Established
    connections live on independently, stopping the listener does not affect them.
    """

    request_queue_size = 128

    def __init__(
        self,
        reactor: Reactor,
        settings: tls.TlsSettings,
        connection_factory: Callable[..., TLSConnection] = TLSConnection,
    ):
        self.reactor = reactor
        self.settings = settings
        self.connection_factory = connection_factory
        self.configure: Callable[[TLSConnection], None] | None = None
        self.socket: socket.socket | None = None

    def __repr__(self):
        if self.socket is None:
            return "ListenerAcceptor(stopped)"
        return f"ListenerAcceptor({human.format_address(self.sockname)})"

    @property
    def sockname(self) -> tuple:
        if self.socket is None:
            raise RuntimeError("Listener is not running.")
        return self.socket.getsockname()

    def fileno(self) -> int:
        if self.socket is None:
            raise RuntimeError("Listener is not running.")
        return self.socket.fileno()

    def start(
        self,
        host: str,
        port: int,
        configure: Callable[[TLSConnection], None] | None = None,
    ) -> None:
        """
        Bind, listen and register with the reactor. An empty host listens on all
        interfaces, which is required to see traffic redirected from other hosts.

        `configure` is called with every new connection before its handshake starts.
        """
        if self.socket is not None:
            raise RuntimeError(f"{self!r} is already running.")
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(self.request_queue_size)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self.socket = sock
        self.configure = configure
        self.reactor.register(self, readable=True, writable=False)
        logger.info(f"Listening for TLS connections at {human.format_address(self.sockname)}.")

    def on_readable(self) -> None:
        assert self.socket is not None
        try:
            sock, peername = self.socket.accept()
        except BlockingIOError:
            logger.debug("Spurious wake-up, no connection to accept.")
            return
        except OSError as e:
            logger.warning(f"Failed to accept a connection: {e}")
            return

        logger.debug(
            f"Accepted connection from {human.format_address(peername)}.",
            extra={"client": peername},
        )
        sock.setblocking(False)
        try:
            conn = self.connection_factory(sock, self.settings, self.reactor)
            if self.configure is not None:
                self.configure(conn)
        except Exception:
            logger.error(
                f"Failed to set up connection from {human.format_address(peername)}.",
                exc_info=True,
                extra={"client": peername},
            )
            sock.close()
            return
        except BaseException:
            sock.close()
            raise
        conn.start()

    def on_writable(self) -> None:
        pass

    def stop(self) -> None:
        """
        Stop accepting connections. Does nothing if the listener is not running.
        """
        if self.socket is None:
            return
        logger.info(f"Stopped listening at {human.format_address(self.sockname)}.")
        self.reactor.deregister(self)
        self.socket.close()
        self.socket = None

    close = stop
