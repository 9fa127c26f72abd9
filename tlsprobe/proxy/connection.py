"""
Server-side TLS on top of a non-blocking socket, driven by reactor readiness events.

Every readiness callback performs exactly one non-blocking OpenSSL call
(handshake step, read or write) and reacts to its outcome only. OpenSSL may
need the socket to become readable to complete a write and vice versa, so
besides the obvious "wants input"/"has output" cases the connection tracks
reads blocked on writability and writes blocked on readability separately.
The reactor interest is always derived from the current state and the
pending output, and pushed to the reactor after every step.
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from OpenSSL import SSL

from tlsprobe import certs
from tlsprobe import log
from tlsprobe import platform
from tlsprobe.net import tls
from tlsprobe.reactor import Reactor
from tlsprobe.utils import human

logger = logging.getLogger(__name__)

READ_SIZE = 65535
# One TLS record worth of plaintext per write attempt.
WRITE_SIZE = 16384


class ConnectionState(Enum):
    HANDSHAKING = "handshaking"
    READ_READY = "read ready"
    READ_BLOCKED_ON_WRITE = "read blocked on write"
    WRITE_BLOCKED_ON_READ = "write blocked on read"
    WRITE_BLOCKED_ON_WRITE = "write blocked on write"
    CLOSED = "closed"


@dataclass
class TlsHooks:
    """
    Callbacks through which the owner of a connection observes and steers it.

    All hooks receive the connection as their first argument. Unset hooks are skipped.
    """

    data: Callable[[TLSConnection, bytes], Any] | None = None
    """Called with the plaintext of each successful read, in order."""
    handshake_success: Callable[[TLSConnection], Any] | None = None
    handshake_failure: Callable[[TLSConnection, Exception], Any] | None = None
    """Called with the error that failed the handshake. The connection is closed right after."""
    close: Callable[[TLSConnection], Any] | None = None
    """Called exactly once, after the connection has released its socket and TLS session."""
    select_server_identity: Callable[[TLSConnection, str], certs.Identity | None] | None = None
    """
    Called during the handshake when the client asks for a host name via SNI.
    Returns the identity to present, or None for the connection's default identity.
    """


def _servername_callback(ssl_conn: SSL.Connection) -> None:
    # Contexts are shared between connections, so find our way back to the right one.
    conn: TLSConnection = ssl_conn.get_app_data()
    conn._on_servername(ssl_conn)


class TLSConnection:
    """
    One intercepted client connection, from TLS handshake to close.

    The connection exclusively owns the accepted socket and the TLS session.
    Construct it, configure its hooks, then call `start` to register it with
    the reactor and begin the handshake.
    """

    sni: str | None = None
    """The host name the client asked for via SNI, if any."""
    error: str | None = None
    """A human-readable description of why the handshake failed."""
    tls_version: str | None = None
    cipher: str | None = None

    def __init__(
        self,
        sock: socket.socket,
        settings: tls.TlsSettings,
        reactor: Reactor,
        hooks: TlsHooks | None = None,
        ssl_conn: SSL.Connection | None = None,
    ):
        self.sock = sock
        self.settings = settings
        self.reactor = reactor
        self.hooks = hooks or TlsHooks()
        self.peername = _peername(sock)
        self.original_addr = _original_addr(sock)

        self.state = ConnectionState.HANDSHAKING
        self.bytes_received = 0
        self.bytes_sent = 0
        self._send_buffer = bytearray()
        # OpenSSL requires a write that would block to be retried with the very same buffer.
        self._inflight: bytes | None = None
        self._handshake_wants_write = False
        self._sni_error: Exception | None = None

        if ssl_conn is None:
            context = tls.create_server_context(
                settings, settings.identity, _servername_callback
            )
            ssl_conn = SSL.Connection(context, sock)
            ssl_conn.set_accept_state()
        ssl_conn.set_app_data(self)
        self.tls = ssl_conn

    def __repr__(self):
        return f"TLSConnection({human.format_address(self.peername)}, {self.state.value})"

    def fileno(self) -> int:
        return self.sock.fileno()

    @property
    def pending_bytes(self) -> int:
        """Number of plaintext bytes handed to `send` that have not been written yet."""
        return len(self._send_buffer)

    def start(self) -> None:
        """
        Register with the reactor. A server-side handshake starts by waiting for the ClientHello.
        """
        if self.state is not ConnectionState.HANDSHAKING:
            raise RuntimeError(f"Cannot start {self!r}.")
        self.reactor.register(self, readable=True, writable=False)

    def send(self, data: bytes) -> None:
        """
        Queue plaintext for the client. Returns immediately, the bytes are
        encrypted and flushed in order as the socket permits. Data sent during
        the handshake is held back until the handshake has completed.
        """
        if self.state is ConnectionState.CLOSED:
            raise ConnectionError(f"Cannot send on a closed connection: {self!r}")
        if not data:
            return
        self._send_buffer.extend(data)
        if self.state is not ConnectionState.HANDSHAKING:
            self._update_interest()

    def close(self) -> None:
        """
        Close the connection immediately. Unsent data is discarded.
        """
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._send_buffer.clear()
        self._inflight = None
        self.reactor.deregister(self)
        self.sock.close()
        logger.debug(f"Connection closed: {self!r}", extra={"client": self.peername})
        self._call(self.hooks.close)

    def select_server_identity(self, hostname: str) -> certs.Identity:
        """
        The identity to present to a client asking for `hostname`.
        Defaults to the identity the connection was configured with.
        """
        if self.hooks.select_server_identity is not None:
            identity = self.hooks.select_server_identity(self, hostname)
            if identity is not None:
                return identity
        return self.settings.identity

    def on_readable(self) -> None:
        if self.state is ConnectionState.HANDSHAKING:
            self._handshake()
        elif self.state in (
            ConnectionState.READ_READY,
            ConnectionState.WRITE_BLOCKED_ON_WRITE,
        ):
            self._read()
        elif self.state is ConnectionState.WRITE_BLOCKED_ON_READ:
            self._write()

    def on_writable(self) -> None:
        if self.state is ConnectionState.HANDSHAKING:
            self._handshake()
        elif self.state is ConnectionState.READ_BLOCKED_ON_WRITE:
            self._read()
        elif self._send_buffer and self.state in (
            ConnectionState.READ_READY,
            ConnectionState.WRITE_BLOCKED_ON_WRITE,
        ):
            self._write()

    def interest(self) -> tuple[bool, bool]:
        """
        The (readable, writable) interest for the current state. Every state
        but CLOSED asks for at least one of them.
        """
        if self.state is ConnectionState.HANDSHAKING:
            return not self._handshake_wants_write, self._handshake_wants_write
        elif self.state is ConnectionState.READ_READY:
            return True, bool(self._send_buffer)
        elif self.state is ConnectionState.READ_BLOCKED_ON_WRITE:
            return False, True
        elif self.state is ConnectionState.WRITE_BLOCKED_ON_READ:
            return True, False
        elif self.state is ConnectionState.WRITE_BLOCKED_ON_WRITE:
            return True, True
        return False, False

    def _update_interest(self) -> None:
        if self.state is not ConnectionState.CLOSED:
            readable, writable = self.interest()
            self.reactor.set_interest(self, readable, writable)

    def _call(self, hook: Callable | None, *args) -> None:
        if hook is not None:
            hook(self, *args)

    def _on_servername(self, ssl_conn: SSL.Connection) -> None:
        # Runs inside OpenSSL. Exceptions would be lost there, so keep them for _handshake.
        raw = ssl_conn.get_servername()
        if raw is None:
            return
        try:
            self.sni = raw.decode("idna")
            identity = self.select_server_identity(self.sni)
            if identity is not self.settings.identity:
                ssl_conn.set_context(
                    tls.create_server_context(
                        self.settings, identity, _servername_callback
                    )
                )
        except Exception as e:
            self._sni_error = e

    def _handshake(self) -> None:
        try:
            self.tls.do_handshake()
        except SSL.WantReadError:
            self._handshake_wants_write = False
        except SSL.WantWriteError:
            self._handshake_wants_write = True
        except SSL.Error as e:
            self._fail_handshake(e, tls.describe_handshake_error(e))
            return
        else:
            if self._sni_error is None:
                self._handshake_done()
                return
        if self._sni_error is not None:
            self._fail_handshake(
                self._sni_error,
                f"Selecting a certificate for {self.sni!r} failed: {self._sni_error!r}",
            )
            return
        self._update_interest()

    def _handshake_done(self) -> None:
        self.state = ConnectionState.READ_READY
        self.tls_version = self.tls.get_protocol_version_name()
        self.cipher = self.tls.get_cipher_name()
        logger.log(
            log.ALERT,
            f"Client TLS handshake successful (sni={self.sni!r}, version={self.tls_version}, cipher={self.cipher})",
            extra={"client": self.peername},
        )
        self._call(self.hooks.handshake_success)
        self._update_interest()

    def _fail_handshake(self, e: Exception, description: str) -> None:
        self.error = description
        logger.info(
            f"Client TLS handshake failed: {description}",
            extra={"client": self.peername},
        )
        try:
            self._call(self.hooks.handshake_failure, e)
        finally:
            self.close()

    def _read(self) -> None:
        try:
            data = self.tls.recv(READ_SIZE)
        except SSL.WantReadError:
            if self.state is ConnectionState.READ_BLOCKED_ON_WRITE:
                self.state = ConnectionState.READ_READY
        except SSL.WantWriteError:
            self.state = ConnectionState.READ_BLOCKED_ON_WRITE
        except SSL.ZeroReturnError:
            logger.debug("Client closed the TLS session.", extra={"client": self.peername})
            self.close()
            return
        except SSL.SysCallError as e:
            if _is_eof(e):
                logger.debug("Client disconnected.", extra={"client": self.peername})
            else:
                logger.info(f"Connection error: {e!r}", extra={"client": self.peername})
            self.close()
            return
        except SSL.Error as e:
            logger.info(f"TLS error: {e!r}", extra={"client": self.peername})
            self.close()
            return
        else:
            if not data:
                self.close()
                return
            if self.state is ConnectionState.READ_BLOCKED_ON_WRITE:
                self.state = ConnectionState.READ_READY
            self.bytes_received += len(data)
            logger.debug(
                f"Received {human.pretty_size(len(data))}.",
                extra={"client": self.peername},
            )
            self._call(self.hooks.data, data)
            if self.state is ConnectionState.CLOSED:
                return
        self._update_interest()

    def _write(self) -> None:
        if self._inflight is None:
            self._inflight = bytes(self._send_buffer[:WRITE_SIZE])
        try:
            written = self.tls.send(self._inflight)
        except SSL.WantReadError:
            self.state = ConnectionState.WRITE_BLOCKED_ON_READ
        except SSL.WantWriteError:
            self.state = ConnectionState.WRITE_BLOCKED_ON_WRITE
        except SSL.Error as e:
            logger.info(f"Error sending data: {e!r}", extra={"client": self.peername})
            self.close()
            return
        else:
            del self._send_buffer[:written]
            self._inflight = None
            self.bytes_sent += written
            blocked_on_read = self.state is ConnectionState.WRITE_BLOCKED_ON_READ
            self.state = ConnectionState.READ_READY
            if blocked_on_read and self.tls.pending():
                # Reading the socket for this write may have left decrypted bytes inside
                # OpenSSL. The socket will never signal them, so resume reading on the next
                # writable turn, which is due right away.
                self.state = ConnectionState.READ_BLOCKED_ON_WRITE
        self._update_interest()


def _is_eof(e: SSL.SysCallError) -> bool:
    return bool(e.args) and e.args[0] == -1


def _peername(sock: socket.socket) -> tuple | None:
    try:
        peername = sock.getpeername()
    except OSError:
        return None
    return peername if isinstance(peername, tuple) else None


def _original_addr(sock: socket.socket) -> tuple[str, int] | None:
    if platform.original_addr is None or sock.family not in (
        socket.AF_INET,
        socket.AF_INET6,
    ):
        return None
    try:
        return platform.original_addr(sock)
    except OSError:
        # Not a redirected connection.
        return None
