import argparse


def common_options(parser, opts):
    parser.add_argument(
        "--version",
        action="store_true",
        help="show version number and exit",
        dest="version",
    )
    parser.add_argument(
        "--options",
        action="store_true",
        help="Show all options and their default values",
    )
    parser.add_argument(
        "--set",
        type=str,
        dest="setoptions",
        default=[],
        action="append",
        metavar="option[=value]",
        help="""
            Set an option. When the value is omitted, booleans are set to true,
            strings and integers are set to None (if permitted), and sequences
            are emptied. Boolean values can be true, false or toggle.
            Sequences are set using multiple invocations to set for
            the same option.
        """,
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", dest="quiet", help="Quiet."
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_const",
        dest="verbose",
        const="debug",
        help="Increase log verbosity.",
    )

    # Listener options
    group = parser.add_argument_group("Listener Options")
    opts.make_parser(group, "listen_host", metavar="HOST")
    opts.make_parser(group, "listen_port", metavar="PORT", short="p")
    opts.make_parser(group, "echo")

    # Redirection options
    group = parser.add_argument_group(
        "Redirection",
        """
        Install a netfilter rule that redirects traffic for a port to the
        listener. The rule is removed again when tlsprobe exits.
        Requires root privileges.
        """,
    )
    opts.make_parser(group, "redirect_port", metavar="PORT")
    opts.make_parser(group, "redirect_interface", metavar="INTERFACE", short="i")

    # TLS options
    group = parser.add_argument_group("TLS")
    opts.make_parser(group, "cert_cn", metavar="NAME")
    opts.make_parser(group, "sni_hosts", metavar="HOST")
    opts.make_parser(group, "tls_version_client_min")
    opts.make_parser(group, "tls_version_client_max")
    opts.make_parser(group, "ciphers_client", metavar="CIPHERS")


def tlsprobe(opts):
    parser = argparse.ArgumentParser(usage="%(prog)s [options]")
    common_options(parser, opts)
    return parser
