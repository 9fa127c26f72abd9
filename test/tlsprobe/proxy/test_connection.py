from __future__ import annotations

import socket
import ssl
import threading
import time

import pytest
from cryptography import x509
from hypothesis import given
from hypothesis import settings as hyp_settings
from hypothesis import strategies as st
from OpenSSL import SSL

from tlsprobe import certs
from tlsprobe.net import tls
from tlsprobe.proxy.connection import _servername_callback
from tlsprobe.proxy.connection import ConnectionState
from tlsprobe.proxy.connection import TLSConnection
from tlsprobe.proxy.connection import TlsHooks
from tlsprobe.reactor import Reactor
from tlsprobe.reactor import SelectorReactor


class RecordingReactor(Reactor):
    def __init__(self):
        self.interest = {}
        self.updates = 0

    def register(self, handler, readable, writable):
        assert handler not in self.interest
        self.interest[handler] = (readable, writable)

    def set_interest(self, handler, readable, writable):
        assert handler in self.interest
        self.interest[handler] = (readable, writable)
        self.updates += 1

    def deregister(self, handler):
        self.interest.pop(handler, None)


class ScriptedSession:
    """
    Stands in for an SSL.Connection and replays scripted outcomes.

    Handshake and read outcomes are exceptions to raise or values to return,
    write outcomes are exceptions or the number of bytes to accept. Reads
    default to "nothing there", writes default to accepting everything.
    """

    def __init__(self, handshake=(), reads=(), writes=()):
        self.handshake = list(handshake)
        self.reads = list(reads)
        self.writes = list(writes)
        self.calls = []
        self.written = []
        self.pending_bytes = 0
        self.servername = None
        self.contexts = []
        self._app_data = None
        self._retry = None

    def set_app_data(self, data):
        self._app_data = data

    def get_app_data(self):
        return self._app_data

    def get_servername(self):
        return self.servername

    def set_context(self, context):
        self.contexts.append(context)

    def do_handshake(self):
        self.calls.append("handshake")
        if self.servername is not None and not self.contexts:
            _servername_callback(self)
        outcome = self.handshake.pop(0) if self.handshake else None
        if isinstance(outcome, Exception):
            raise outcome

    def recv(self, bufsiz):
        self.calls.append("recv")
        outcome = self.reads.pop(0) if self.reads else SSL.WantReadError()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def send(self, data):
        self.calls.append("send")
        if self._retry is not None:
            # OpenSSL insists on the very same buffer after a would-block.
            assert data is self._retry
            self._retry = None
        outcome = self.writes.pop(0) if self.writes else len(data)
        if isinstance(outcome, (SSL.WantReadError, SSL.WantWriteError)):
            self._retry = data
        if isinstance(outcome, Exception):
            raise outcome
        accepted = data[: max(1, outcome)]
        self.written.append(accepted)
        return len(accepted)

    def pending(self):
        return self.pending_bytes

    def get_protocol_version_name(self):
        return "TLSv1.3"

    def get_cipher_name(self):
        return "TLS_AES_256_GCM_SHA384"


class Events:
    def __init__(self):
        self.log = []
        self.data = []

    def hooks(self, **overrides) -> TlsHooks:
        hooks = TlsHooks(
            data=lambda conn, data: (self.log.append("data"), self.data.append(data)),
            handshake_success=lambda conn: self.log.append("handshake_success"),
            handshake_failure=lambda conn, e: self.log.append("handshake_failure"),
            close=lambda conn: self.log.append("close"),
        )
        for k, v in overrides.items():
            setattr(hooks, k, v)
        return hooks


@pytest.fixture()
def sockets():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def make_conn(sockets, settings, session, events=None, **overrides):
    reactor = RecordingReactor()
    events = events or Events()
    conn = TLSConnection(
        sockets[0], settings, reactor, events.hooks(**overrides), ssl_conn=session
    )
    conn.start()
    return conn, reactor, events


def established(sockets, settings, **script):
    session = ScriptedSession(**script)
    conn, reactor, events = make_conn(sockets, settings, session)
    conn.on_readable()
    assert conn.state is ConnectionState.READ_READY
    session.calls.clear()
    events.log.clear()
    return conn, reactor, events, session


class TestHandshake:
    def test_start(self, sockets, settings):
        conn, reactor, events = make_conn(sockets, settings, ScriptedSession())
        assert conn.state is ConnectionState.HANDSHAKING
        assert reactor.interest[conn] == (True, False)
        assert conn.peername is None
        assert conn.original_addr is None
        assert "handshaking" in repr(conn)

    def test_start_after_close(self, sockets, settings):
        conn, reactor, events = make_conn(sockets, settings, ScriptedSession())
        conn.close()
        with pytest.raises(RuntimeError):
            conn.start()

    def test_success(self, sockets, settings):
        session = ScriptedSession(handshake=[SSL.WantReadError(), SSL.WantWriteError()])
        conn, reactor, events = make_conn(sockets, settings, session)

        conn.on_readable()
        assert conn.state is ConnectionState.HANDSHAKING
        assert reactor.interest[conn] == (True, False)

        conn.on_readable()
        assert conn.state is ConnectionState.HANDSHAKING
        assert reactor.interest[conn] == (False, True)

        conn.on_writable()
        assert conn.state is ConnectionState.READ_READY
        assert reactor.interest[conn] == (True, False)
        assert session.calls == ["handshake"] * 3
        assert events.log == ["handshake_success"]
        assert conn.tls_version == "TLSv1.3"
        assert conn.cipher == "TLS_AES_256_GCM_SHA384"

    def test_send_during_handshake(self, sockets, settings):
        session = ScriptedSession(handshake=[SSL.WantReadError()])
        conn, reactor, events = make_conn(sockets, settings, session)
        conn.send(b"early")
        assert conn.pending_bytes == 5
        assert reactor.interest[conn] == (True, False)

        conn.on_readable()
        assert reactor.interest[conn] == (True, False)
        assert "send" not in session.calls

        conn.on_readable()
        assert conn.state is ConnectionState.READ_READY
        assert reactor.interest[conn] == (True, True)

        conn.on_writable()
        assert session.written == [b"early"]
        assert conn.pending_bytes == 0
        assert reactor.interest[conn] == (True, False)

    def test_failure(self, sockets, settings):
        session = ScriptedSession(
            handshake=[SSL.Error([("SSL routines", "", "tlsv1 alert unknown ca")])]
        )
        conn, reactor, events = make_conn(sockets, settings, session)
        conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert events.log == ["handshake_failure", "close"]
        assert "does not trust" in conn.error
        assert conn not in reactor.interest
        assert sockets[0].fileno() == -1

    def test_failure_hook_raises(self, sockets, settings):
        def fail(conn, e):
            raise ValueError("oops")

        session = ScriptedSession(handshake=[SSL.SysCallError(-1, "Unexpected EOF")])
        conn, reactor, events = make_conn(sockets, settings, session, handshake_failure=fail)
        with pytest.raises(ValueError):
            conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert events.log == ["close"]
        assert conn.error == "Client closed the connection during the handshake."

    def test_success_hook_closes(self, sockets, settings):
        session = ScriptedSession()
        conn, reactor, events = make_conn(
            sockets, settings, session, handshake_success=lambda c: c.close()
        )
        conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert conn not in reactor.interest
        assert events.log == ["close"]


class TestServerIdentity:
    def test_default(self, sockets, settings):
        session = ScriptedSession()
        session.servername = b"example.com"
        conn, reactor, events = make_conn(sockets, settings, session)
        conn.on_readable()
        assert conn.sni == "example.com"
        assert session.contexts == []
        assert conn.state is ConnectionState.READ_READY

    def test_hook_returns_none(self, sockets, settings):
        session = ScriptedSession()
        session.servername = b"example.com"
        conn, reactor, events = make_conn(
            sockets, settings, session, select_server_identity=lambda c, host: None
        )
        assert conn.select_server_identity("example.com") is settings.identity
        conn.on_readable()
        assert session.contexts == []

    def test_switch(self, sockets, settings, other_identity):
        seen = []

        def select(conn, hostname):
            seen.append(hostname)
            return other_identity

        session = ScriptedSession()
        session.servername = b"www.other.example"
        conn, reactor, events = make_conn(
            sockets, settings, session, select_server_identity=select
        )
        conn.on_readable()
        assert seen == ["www.other.example"]
        assert len(session.contexts) == 1
        assert isinstance(session.contexts[0], SSL.Context)
        assert conn.state is ConnectionState.READ_READY

    def test_hook_raises(self, sockets, settings):
        def select(conn, hostname):
            raise KeyError(hostname)

        session = ScriptedSession()
        session.servername = b"example.com"
        conn, reactor, events = make_conn(
            sockets, settings, session, select_server_identity=select
        )
        conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert events.log == ["handshake_failure", "close"]
        assert "example.com" in conn.error


class TestReadWrite:
    def test_read(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, reads=[b"foo", SSL.WantReadError(), b"bar"]
        )
        conn.on_readable()
        conn.on_readable()
        conn.on_readable()
        assert events.data == [b"foo", b"bar"]
        assert session.calls == ["recv"] * 3
        assert conn.state is ConnectionState.READ_READY
        assert conn.bytes_received == 6

    def test_read_blocked_on_write(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, reads=[SSL.WantWriteError(), b"foo"]
        )
        conn.on_readable()
        assert conn.state is ConnectionState.READ_BLOCKED_ON_WRITE
        assert reactor.interest[conn] == (False, True)

        # No read interest, so nothing must happen.
        conn.on_readable()
        assert session.calls == ["recv"]

        conn.on_writable()
        assert conn.state is ConnectionState.READ_READY
        assert events.data == [b"foo"]
        assert reactor.interest[conn] == (True, False)

    def test_read_blocked_on_write_no_data_yet(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, reads=[SSL.WantWriteError(), SSL.WantReadError()]
        )
        conn.on_readable()
        conn.on_writable()
        assert conn.state is ConnectionState.READ_READY
        assert events.data == []
        assert reactor.interest[conn] == (True, False)

    def test_write(self, sockets, settings):
        conn, reactor, events, session = established(sockets, settings)
        conn.send(b"foo")
        assert reactor.interest[conn] == (True, True)
        conn.on_writable()
        assert session.written == [b"foo"]
        assert conn.bytes_sent == 3
        assert reactor.interest[conn] == (True, False)

        # Spurious writability without data does not touch OpenSSL.
        conn.on_writable()
        assert session.calls == ["send"]

    def test_write_blocked_on_read(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[SSL.WantReadError()]
        )
        conn.send(b"foo")
        conn.on_writable()
        assert conn.state is ConnectionState.WRITE_BLOCKED_ON_READ
        assert reactor.interest[conn] == (True, False)

        conn.on_readable()
        assert session.calls == ["send", "send"]
        assert session.written == [b"foo"]
        assert conn.state is ConnectionState.READ_READY
        assert reactor.interest[conn] == (True, False)

    def test_write_blocked_on_read_with_buffered_plaintext(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[SSL.WantReadError()], reads=[b"buffered"]
        )
        conn.send(b"foo")
        conn.on_writable()
        session.pending_bytes = 8

        conn.on_readable()
        assert conn.state is ConnectionState.READ_BLOCKED_ON_WRITE
        assert reactor.interest[conn] == (False, True)

        conn.on_writable()
        assert events.data == [b"buffered"]
        assert session.calls == ["send", "send", "recv"]

    def test_write_blocked_on_write(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[SSL.WantWriteError()], reads=[b"in"]
        )
        conn.send(b"out")
        conn.on_writable()
        assert conn.state is ConnectionState.WRITE_BLOCKED_ON_WRITE
        assert reactor.interest[conn] == (True, True)

        # Reading is still allowed while a write waits for the socket.
        conn.on_readable()
        assert events.data == [b"in"]
        assert conn.state is ConnectionState.WRITE_BLOCKED_ON_WRITE

        conn.on_writable()
        assert session.written == [b"out"]
        assert conn.state is ConnectionState.READ_READY
        assert session.calls == ["send", "recv", "send"]

    def test_partial_writes_keep_order(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[2, SSL.WantWriteError(), 3, SSL.WantReadError()]
        )
        conn.send(b"hello ")
        conn.send(b"world")
        while conn.pending_bytes:
            readable, writable = reactor.interest[conn]
            if writable:
                conn.on_writable()
            else:
                conn.on_readable()
        assert b"".join(session.written) == b"hello world"

    def test_large_write_is_chunked(self, sockets, settings):
        conn, reactor, events, session = established(sockets, settings)
        conn.send(b"x" * 40000)
        while conn.pending_bytes:
            conn.on_writable()
        assert [len(x) for x in session.written] == [16384, 16384, 7232]

    def test_send_empty(self, sockets, settings):
        conn, reactor, events, session = established(sockets, settings)
        updates = reactor.updates
        conn.send(b"")
        assert reactor.updates == updates
        assert reactor.interest[conn] == (True, False)


class TestClose:
    @pytest.mark.parametrize(
        "error",
        [
            SSL.ZeroReturnError(),
            SSL.SysCallError(-1, "Unexpected EOF"),
            SSL.SysCallError(104, "ECONNRESET"),
            SSL.Error([("SSL routines", "", "decryption failed or bad record mac")]),
        ],
    )
    def test_read_errors_close(self, sockets, settings, error):
        conn, reactor, events, session = established(sockets, settings, reads=[error])
        conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert events.log == ["close"]
        assert conn not in reactor.interest

    def test_write_error_closes(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[SSL.SysCallError(32, "EPIPE")]
        )
        conn.send(b"foo")
        conn.on_writable()
        assert conn.state is ConnectionState.CLOSED
        assert events.log == ["close"]

    def test_close_discards_buffer(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, writes=[SSL.WantWriteError()]
        )
        conn.send(b"foo")
        conn.on_writable()
        conn.close()
        assert conn.pending_bytes == 0
        assert conn.interest() == (False, False)

    def test_close_once(self, sockets, settings):
        conn, reactor, events, session = established(sockets, settings)
        conn.close()
        conn.close()
        assert events.log == ["close"]
        with pytest.raises(ConnectionError):
            conn.send(b"foo")
        # Late events are ignored.
        conn.on_readable()
        conn.on_writable()
        assert session.calls == []

    def test_data_hook_closes(self, sockets, settings):
        conn, reactor, events, session = established(
            sockets, settings, reads=[b"foo"]
        )
        conn.hooks.data = lambda c, data: c.close()
        updates = reactor.updates
        conn.on_readable()
        assert conn.state is ConnectionState.CLOSED
        assert reactor.updates == updates


def outcome(x):
    if x == "want_read":
        return SSL.WantReadError()
    if x == "want_write":
        return SSL.WantWriteError()
    return x


wants = st.sampled_from(["want_read", "want_write"])


@given(
    reads=st.lists(st.one_of(st.binary(min_size=1, max_size=8), wants), max_size=20),
    writes=st.lists(st.one_of(st.integers(1, 8), wants), max_size=20),
    chunks=st.lists(st.binary(min_size=1, max_size=20), min_size=1, max_size=5),
    choices=st.lists(st.booleans(), min_size=1, max_size=80),
)
@hyp_settings(max_examples=200, deadline=None)
def test_readiness_sequences(identity, reads, writes, chunks, choices):
    settings = tls.TlsSettings(identity=identity)
    session = ScriptedSession(
        reads=[outcome(x) for x in reads], writes=[outcome(x) for x in writes]
    )
    received = []
    a, b = socket.socketpair()
    try:
        reactor = RecordingReactor()
        conn = TLSConnection(
            a,
            settings,
            reactor,
            TlsHooks(data=lambda c, data: received.append(data)),
            ssl_conn=session,
        )
        conn.start()
        conn.on_readable()
        for chunk in chunks:
            conn.send(chunk)

        for prefer_read in choices:
            assert reactor.interest[conn] == conn.interest()
            readable, writable = conn.interest()
            assert readable or writable
            before = len(session.calls)
            if readable and (prefer_read or not writable):
                conn.on_readable()
            else:
                conn.on_writable()
            assert len(session.calls) == before + 1
            assert conn.state is not ConnectionState.CLOSED

        sent = b"".join(chunks)
        written = b"".join(session.written)
        assert sent.startswith(written)
        assert len(written) + conn.pending_bytes == len(sent)
        assert b"".join(received) == b"".join(x for x in reads if isinstance(x, bytes))[
            : len(b"".join(received))
        ]
    finally:
        a.close()
        b.close()


def drive(reactor, done, timeout=10):
    deadline = time.monotonic() + timeout
    while not done():
        assert time.monotonic() < deadline, "timed out"
        reactor.run_once(0.05)


class TestLoopback:
    """Real handshakes against the standard library's TLS client."""

    @pytest.fixture()
    def server(self, settings):
        reactor = SelectorReactor()
        lsock = socket.socket()
        lsock.bind(("127.0.0.1", 0))
        lsock.listen(1)
        yield reactor, lsock
        lsock.close()
        reactor.close()

    def accept(self, server, settings, events, **overrides):
        reactor, lsock = server
        sock, _ = lsock.accept()
        sock.setblocking(False)
        conn = TLSConnection(sock, settings, reactor, events.hooks(**overrides))
        conn.start()
        return conn

    @staticmethod
    def client(port, result, server_hostname="example.com", payload=b"hello"):
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        try:
            with socket.create_connection(("127.0.0.1", port)) as s:
                with ctx.wrap_socket(s, server_hostname=server_hostname) as ts:
                    result["cert"] = ts.getpeercert(binary_form=True)
                    ts.sendall(payload)
                    echoed = b""
                    while len(echoed) < len(payload):
                        data = ts.recv(len(payload) - len(echoed))
                        if not data:
                            break
                        echoed += data
                    result["echo"] = echoed
        except (OSError, ssl.SSLError) as e:
            result["error"] = e

    def test_echo(self, server, settings):
        reactor, lsock = server
        events = Events()
        result = {}
        t = threading.Thread(
            target=self.client, args=(lsock.getsockname()[1], result), daemon=True
        )
        t.start()
        conn = self.accept(server, settings, events, data=lambda c, data: c.send(data))
        drive(reactor, lambda: not t.is_alive())
        drive(reactor, lambda: conn.state is ConnectionState.CLOSED)
        t.join()

        assert "error" not in result
        assert result["echo"] == b"hello"
        assert events.log[0] == "handshake_success"
        assert events.log[-1] == "close"
        assert events.log.count("close") == 1
        assert conn.sni == "example.com"
        cert = x509.load_der_x509_certificate(result["cert"])
        assert cert == settings.identity.cert.to_cryptography()

    def test_sni_selects_identity(self, server, settings, other_identity):
        reactor, lsock = server
        events = Events()
        result = {}
        t = threading.Thread(
            target=self.client,
            args=(lsock.getsockname()[1], result, "www.other.example"),
            daemon=True,
        )
        t.start()
        conn = self.accept(
            server,
            settings,
            events,
            data=lambda c, data: c.send(data),
            select_server_identity=lambda c, host: other_identity,
        )
        drive(reactor, lambda: not t.is_alive())
        t.join()

        assert conn.sni == "www.other.example"
        cert = x509.load_der_x509_certificate(result["cert"])
        assert cert == other_identity.cert.to_cryptography()

    def test_not_tls(self, server, settings):
        reactor, lsock = server
        events = Events()

        def client():
            with socket.create_connection(lsock.getsockname()) as s:
                s.sendall(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
                try:
                    s.recv(1024)
                except OSError:
                    pass

        t = threading.Thread(target=client, daemon=True)
        t.start()
        conn = self.accept(server, settings, events)
        drive(reactor, lambda: conn.state is ConnectionState.CLOSED)
        t.join()

        assert events.log == ["handshake_failure", "close"]
        assert conn.error

    @pytest.mark.parametrize(
        "hostname,expected", [("a.example", "other"), ("unknown.example", "default")]
    )
    def test_sni_identity_store(self, server, settings, other_identity, hostname, expected):
        reactor, lsock = server
        store = certs.IdentityStore(settings.identity)
        store.add(other_identity, "a.example")
        result = {}
        t = threading.Thread(
            target=self.client,
            args=(lsock.getsockname()[1], result, hostname),
            daemon=True,
        )
        t.start()
        self.accept(
            server,
            settings,
            Events(),
            data=lambda c, data: c.send(data),
            select_server_identity=lambda c, host: store.get(host),
        )
        drive(reactor, lambda: not t.is_alive())
        t.join()

        identity = other_identity if expected == "other" else settings.identity
        cert = x509.load_der_x509_certificate(result["cert"])
        assert cert == identity.cert.to_cryptography()
