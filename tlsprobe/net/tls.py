from __future__ import annotations

import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO

from OpenSSL import crypto
from OpenSSL import SSL

from tlsprobe import certs


class Version(Enum):
    UNBOUNDED = 0
    SSL3 = SSL.SSL3_VERSION
    TLS1 = SSL.TLS1_VERSION
    TLS1_1 = SSL.TLS1_1_VERSION
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_MAX_VERSION = Version.UNBOUNDED
DEFAULT_OPTIONS = SSL.OP_CIPHER_SERVER_PREFERENCE | SSL.OP_NO_COMPRESSION


class MasterSecretLogger:
    def __init__(self, filename: Path):
        self.filename = filename.expanduser()
        self.f: BinaryIO | None = None
        self.lock = threading.Lock()

    # required for functools.wraps, which pyOpenSSL uses.
    __name__ = "MasterSecretLogger"

    def __call__(self, connection: SSL.Connection, keymaterial: bytes) -> None:
        with self.lock:
            if self.f is None:
                self.filename.parent.mkdir(parents=True, exist_ok=True)
                self.f = self.filename.open("ab")
                self.f.write(b"\n")
            self.f.write(keymaterial + b"\n")
            self.f.flush()

    def close(self):
        with self.lock:
            if self.f is not None:
                self.f.close()


def make_master_secret_logger(filename: str | None) -> MasterSecretLogger | None:
    if filename:
        return MasterSecretLogger(Path(filename))
    return None


log_master_secret = make_master_secret_logger(
    os.getenv("TLSPROBE_SSLKEYLOGFILE") or os.getenv("SSLKEYLOGFILE")
)


@dataclass(frozen=True)
class TlsSettings:
    """
    The server-side TLS parameters of an intercepting listener.

    `identity` is what clients are shown unless the SNI hook of a connection
    picks another one.
    """

    identity: certs.Identity
    min_version: Version = DEFAULT_MIN_VERSION
    max_version: Version = DEFAULT_MAX_VERSION
    cipher_list: tuple[str, ...] | None = None
    ecdh_curve: str | None = None


@lru_cache(256)
def create_server_context(
    settings: TlsSettings,
    identity: certs.Identity,
    servername_callback: Callable[[SSL.Connection], None] | None = None,
) -> SSL.Context:
    """
    Create the context used to terminate TLS for intercepted clients,
    presenting `identity`.

    Contexts are cached, the servername callback must therefore find the
    connection it belongs to via `SSL.Connection.get_app_data`.
    """
    context = SSL.Context(SSL.TLS_SERVER_METHOD)

    try:
        context.set_min_proto_version(settings.min_version.value)
        context.set_max_proto_version(settings.max_version.value)
    except SSL.Error as e:
        raise RuntimeError(
            f"Error setting TLS versions ({settings.min_version=}, {settings.max_version=}). "
            "The version you specified may be unavailable in your libssl."
        ) from e

    # Options
    context.set_options(DEFAULT_OPTIONS)

    # ECDHE for Key exchange
    if settings.ecdh_curve is not None:
        try:
            context.set_tmp_ecdh(crypto.get_elliptic_curve(settings.ecdh_curve))
        except ValueError as e:
            raise RuntimeError(f"Elliptic curve specification error: {e}") from e

    # Cipher List
    if settings.cipher_list is not None:
        try:
            context.set_cipher_list(b":".join(x.encode() for x in settings.cipher_list))
        except SSL.Error as e:
            raise RuntimeError(f"SSL cipher specification error: {e}") from e

    # Identity
    try:
        context.use_certificate(identity.cert.to_cryptography())
        context.use_privatekey(identity.privatekey)
        context.check_privatekey()
    except SSL.Error as e:
        raise RuntimeError(f"Cannot use identity {identity!r}: {e}") from e
    for c in identity.chain:
        context.add_extra_chain_cert(c.to_pyopenssl())

    context.set_verify(SSL.VERIFY_NONE, None)

    if servername_callback is not None:
        context.set_tlsext_servername_callback(servername_callback)

    # SSLKEYLOGFILE
    if log_master_secret:
        context.set_keylog_callback(log_master_secret)

    return context


def describe_handshake_error(e: SSL.Error) -> str:
    """
    Turn an OpenSSL handshake error into a message a human can act on.
    """
    if isinstance(e, SSL.SysCallError):
        if e.args and e.args[0] == -1:
            return "Client closed the connection during the handshake."
        return f"Connection error during the handshake: {e.args[-1] if e.args else e!r}"

    last_err = e.args and isinstance(e.args[0], list) and e.args[0] and e.args[0][-1]
    if not isinstance(last_err, tuple) or len(last_err) != 3:
        return f"OpenSSL {e!r}"
    reason = last_err[2]
    if reason in (
        "tlsv1 alert unknown ca",
        "sslv3 alert bad certificate",
        "ssl/tls alert bad certificate",
        "sslv3 alert certificate unknown",
        "ssl/tls alert certificate unknown",
    ):
        return f"The client does not trust the presented certificate ({reason})."
    if reason in ("tlsv1 alert protocol version", "unsupported protocol"):
        return "The client and tlsprobe cannot agree on a TLS version to use."
    if reason in ("no shared cipher",):
        return "The client and tlsprobe cannot agree on a cipher to use."
    if reason in (
        "wrong version number",
        "http request",
        "https proxy request",
        "packet length too long",
        "record layer failure",
    ):
        return "The client does not speak TLS."
    return f"OpenSSL {e!r}"
