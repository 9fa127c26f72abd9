from collections.abc import Sequence
from typing import Optional

from tlsprobe import log
from tlsprobe import optmanager
from tlsprobe.net import tls

CONF_DIR = "~/.tlsprobe"
CONF_BASENAME = "tlsprobe"
KEY_SIZE = 2048


class Options(optmanager.OptManager):
    def __init__(self, **kwargs) -> None:
        super().__init__()

        # Listener options
        self.add_option(
            "listen_host",
            str,
            "",
            """
            Address to bind the intercepting listener to. Leave this empty when
            traffic is redirected from another interface, otherwise the
            redirected connections never reach the listener.
            """,
        )
        self.add_option("listen_port", int, 8443, "Listener port.")
        self.add_option(
            "confdir",
            str,
            CONF_DIR,
            "Location of the default tlsprobe configuration files.",
        )

        # Redirection options
        self.add_option(
            "redirect_port",
            Optional[int],
            None,
            """
            Destination port of the traffic to intercept. When set, a netfilter
            rule redirecting this port to the listener is installed on start
            and removed on exit.
            """,
        )
        self.add_option(
            "redirect_protocol",
            str,
            "tcp",
            "Protocol matched by the redirection rule.",
            choices=("tcp", "udp"),
        )
        self.add_option(
            "redirect_interface",
            Optional[str],
            None,
            "Only redirect traffic arriving on this network interface.",
        )
        self.add_option(
            "iptables", str, "/sbin/iptables", "Path to the iptables binary."
        )

        # TLS options
        self.add_option(
            "tls_version_client_min",
            str,
            tls.DEFAULT_MIN_VERSION.name,
            "Set the minimum TLS version for client connections.",
            choices=[x.name for x in tls.Version],
        )
        self.add_option(
            "tls_version_client_max",
            str,
            tls.DEFAULT_MAX_VERSION.name,
            "Set the maximum TLS version for client connections.",
            choices=[x.name for x in tls.Version],
        )
        self.add_option(
            "ciphers_client",
            Optional[str],
            None,
            "Set supported ciphers for client connections using OpenSSL syntax.",
        )
        self.add_option(
            "ecdh_curve",
            Optional[str],
            None,
            "Name of the elliptic curve used for ECDHE key exchange.",
        )
        self.add_option(
            "cert_cn",
            str,
            CONF_BASENAME,
            "Common name of the default certificate presented to clients.",
        )
        self.add_option(
            "key_size",
            int,
            KEY_SIZE,
            "Size of the RSA key generated for the certificate authority.",
        )
        self.add_option(
            "sni_hosts",
            Sequence[str],
            [],
            """
            Host names that get a dedicated certificate when a client asks for
            them via SNI. Wildcards such as *.example.com are allowed. All other
            host names are served the default certificate.
            """,
        )

        # Behaviour
        self.add_option(
            "echo", bool, False, "Echo decrypted client data back to the client."
        )
        self.add_option(
            "termlog_verbosity",
            str,
            "info",
            "Log verbosity.",
            choices=log.LogLevels,
        )

        self.update(**kwargs)
