from __future__ import annotations

import logging
import os
import signal
import sys
from collections.abc import Sequence

from tlsprobe import certs
from tlsprobe import exceptions
from tlsprobe import log
from tlsprobe import options
from tlsprobe import optmanager
from tlsprobe import version
from tlsprobe.net import tls
from tlsprobe.platform import netfilter
from tlsprobe.proxy.connection import TLSConnection
from tlsprobe.proxy.connection import TlsHooks
from tlsprobe.proxy.listener import ListenerAcceptor
from tlsprobe.reactor import SelectorReactor
from tlsprobe.tools import cmdline
from tlsprobe.utils import human

logger = logging.getLogger(__name__)


def process_options(parser, opts, args):
    if args.version:
        print(version.TLSPROBE)
        sys.exit(0)
    if args.quiet or args.options:
        args.termlog_verbosity = "error"
    if args.verbose:
        args.termlog_verbosity = "debug"

    adict = {
        key: val for key, val in vars(args).items() if key in opts and val is not None
    }
    opts.update(**adict)


def load_options(opts: options.Options, args) -> None:
    """
    Apply config files and command line arguments to `opts`, the command line taking precedence.
    """
    # --set may point us to another confdir, so parse it before looking for config files.
    cli = options.Options()
    cli.set(*args.setoptions)
    optmanager.load_paths(
        opts,
        os.path.join(cli.confdir, "config.yaml"),
        os.path.join(cli.confdir, "config.yml"),
    )
    opts.update(**{k: getattr(cli, k) for k in cli.keys() if cli.has_changed(k)})


def make_identities(opts: options.Options) -> certs.IdentityStore:
    """
    Mint a certificate authority, the default identity and one identity per SNI host.
    """
    ca_key, ca_cert = certs.create_ca(
        organization=options.CONF_BASENAME,
        cn=f"{opts.cert_cn} CA",
        key_size=opts.key_size,
    )
    default = certs.Identity.generate(
        ca_key, ca_cert, opts.cert_cn, [opts.cert_cn], options.CONF_BASENAME
    )
    store = certs.IdentityStore(default)
    for host in opts.sni_hosts:
        identity = certs.Identity.generate(
            ca_key, ca_cert, host, [host], options.CONF_BASENAME
        )
        store.add(identity, host)
    return store


def make_settings(opts: options.Options, identity: certs.Identity) -> tls.TlsSettings:
    if opts.ciphers_client:
        cipher_list = tuple(opts.ciphers_client.split(":"))
    else:
        cipher_list = None
    return tls.TlsSettings(
        identity=identity,
        min_version=tls.Version[opts.tls_version_client_min],
        max_version=tls.Version[opts.tls_version_client_max],
        cipher_list=cipher_list,
        ecdh_curve=opts.ecdh_curve,
    )


class Probe:
    """
    Reports what intercepted clients do, and optionally echoes their plaintext back.
    """

    def __init__(self, store: certs.IdentityStore, echo: bool = False):
        self.store = store
        self.echo = echo
        self.handshakes_succeeded = 0
        self.handshakes_failed = 0

    def configure(self, conn: TLSConnection) -> None:
        conn.hooks = TlsHooks(
            data=self.data,
            handshake_success=self.handshake_success,
            handshake_failure=self.handshake_failure,
            close=self.close,
            select_server_identity=self.select_server_identity,
        )
        if conn.original_addr:
            logger.info(
                f"Client connected, original destination {human.format_address(conn.original_addr)}.",
                extra={"client": conn.peername},
            )
        else:
            logger.info("Client connected.", extra={"client": conn.peername})

    def select_server_identity(self, conn: TLSConnection, hostname: str) -> certs.Identity:
        identity = self.store.get(hostname)
        logger.debug(
            f"Presenting {identity!r} for {hostname!r}.", extra={"client": conn.peername}
        )
        return identity

    def handshake_success(self, conn: TLSConnection) -> None:
        self.handshakes_succeeded += 1

    def handshake_failure(self, conn: TLSConnection, error: Exception) -> None:
        self.handshakes_failed += 1

    def data(self, conn: TLSConnection, data: bytes) -> None:
        logger.info(
            f"Decrypted {human.pretty_size(len(data))} of client data.",
            extra={"client": conn.peername},
        )
        if self.echo:
            conn.send(data)

    def close(self, conn: TLSConnection) -> None:
        logger.info(
            f"Client disconnected ({human.pretty_size(conn.bytes_received)} received, "
            f"{human.pretty_size(conn.bytes_sent)} sent).",
            extra={"client": conn.peername},
        )


def run(arguments: Sequence[str] | None) -> int:
    logging.getLogger().setLevel(logging.DEBUG)

    opts = options.Options()
    parser = cmdline.tlsprobe(opts)
    args = parser.parse_args(arguments)

    try:
        load_options(opts, args)
        process_options(parser, opts, args)
        if args.options:
            optmanager.dump_defaults(opts, sys.stdout)
            return 0
    except exceptions.OptionsError as e:
        print(f"{parser.prog}: {e}", file=sys.stderr)
        return 1

    termlog = log.TermLogHandler()
    termlog.set_verbosity(opts.termlog_verbosity)
    termlog.install()
    try:
        return _serve(opts)
    finally:
        termlog.uninstall()


def _serve(opts: options.Options) -> int:
    store = make_identities(opts)
    settings = make_settings(opts, store.default)
    try:
        tls.create_server_context(settings, settings.identity)
    except RuntimeError as e:
        logger.error(str(e))
        return 1

    probe = Probe(store, echo=opts.echo)
    reactor = SelectorReactor()
    listener = ListenerAcceptor(reactor, settings)

    def _stop(*_):
        reactor.stop()

    handlers = {signal.SIGINT: _stop, signal.SIGTERM: _stop}
    if hasattr(signal, "SIGPIPE"):
        handlers[signal.SIGPIPE] = signal.SIG_IGN
    previous = {signum: signal.signal(signum, handler) for signum, handler in handlers.items()}

    try:
        with netfilter.RuleHandler(opts.iptables) as rules:
            try:
                listener.start(opts.listen_host, opts.listen_port, probe.configure)
            except OSError as e:
                logger.error(
                    f"Cannot listen on {opts.listen_host or '*'}:{opts.listen_port}: {e}"
                )
                return 1
            try:
                if opts.redirect_port is not None:
                    rules.redirect(to_ports=listener.sockname[1]).where(
                        protocol=opts.redirect_protocol,
                        dest_port=opts.redirect_port,
                        in_interface=opts.redirect_interface,
                    ).run()
                reactor.run()
            finally:
                reactor.close()
    except exceptions.RedirectionError as e:
        logger.error(str(e))
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    logger.info(
        f"Shutting down ({probe.handshakes_succeeded} successful and "
        f"{probe.handshakes_failed} failed handshakes)."
    )
    return 0


def tlsprobe(args=None) -> int | None:  # pragma: no cover
    return run(args)
