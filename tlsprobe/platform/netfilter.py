"""
Traffic redirection using the Linux kernel's netfilter.

Installing a rule is roughly equivalent to

    iptables -t nat -A PREROUTING -p tcp --destination-port 443 -j REDIRECT --to-ports 8443

and the rule is deleted again with -D when the handler reverts. Only IPv4 is
covered. The listener must be bound to all interfaces, a listener on 127.0.0.1
never sees traffic redirected from another device.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field

from tlsprobe import exceptions

logger = logging.getLogger(__name__)

IPTABLES = "/sbin/iptables"


@dataclass
class RedirectRule:
    """
    What to redirect (the match criteria) and where to (the target port).

    A rule is inert until it is run by its handler:

        handler.redirect(to_ports=8443).where(protocol="tcp", dest_port=443).run()
    """

    handler: RuleHandler = field(repr=False, compare=False)
    protocol: str | None = None
    dest_port: int | None = None
    in_interface: str | None = None
    to_ports: int | None = None

    def where(
        self,
        protocol: str | None = None,
        dest_port: int | None = None,
        in_interface: str | None = None,
    ) -> RedirectRule:
        if protocol is not None:
            self.protocol = protocol
        if dest_port is not None:
            self.dest_port = dest_port
        if in_interface is not None:
            self.in_interface = in_interface
        return self

    def run(self) -> RedirectRule:
        self.handler.run(self)
        return self


@dataclass
class IPTablesRule(RedirectRule):
    table: str = "nat"
    chain: str = "PREROUTING"

    def to_netfilter_command(self) -> list[str]:
        args = []
        if self.protocol is not None:
            args += ["-p", str(self.protocol)]
        if self.dest_port is not None:
            args += ["--destination-port", str(self.dest_port)]
        if self.in_interface is not None:
            args += ["--in-interface", str(self.in_interface)]
        if self.to_ports is not None:
            args += ["-j", "REDIRECT", "--to-ports", str(self.to_ports)]
        return args


class RuleHandler:
    """
    Runs redirection rules and keeps track of them so they can be removed later.

    Use it as a context manager to make sure the host does not keep redirecting
    traffic after we are gone:

        with RuleHandler() as rules:
            rules.redirect(to_ports=8443).where(protocol="tcp", dest_port=443).run()
            ...
    """

    def __init__(self, iptables: str = IPTABLES):
        self.iptables = iptables
        self.active_rules: list[IPTablesRule] = []

    def redirect(self, to_ports: int) -> IPTablesRule:
        return IPTablesRule(self, to_ports=to_ports)

    def _command(self, rule: IPTablesRule, action: str) -> list[str]:
        return [self.iptables, "-t", rule.table, action, rule.chain] + rule.to_netfilter_command()

    @staticmethod
    def _execute(args: Sequence[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )

    def run(self, rule: IPTablesRule) -> None:
        """
        Install the rule. Raises InstallationError if iptables fails, in which
        case the rule is not retained.
        """
        args = self._command(rule, "-A")
        try:
            proc = self._execute(args)
        except OSError as e:
            raise exceptions.RedirectionError(f"Cannot run {self.iptables}: {e}") from e
        if proc.returncode != 0:
            output = (proc.stdout or b"").decode(errors="replace").strip()
            logger.error(f"Installing redirection rule failed: {' '.join(args)}")
            raise exceptions.InstallationError(args, proc.returncode, output)
        logger.info(f"Installed redirection rule: {' '.join(args)}")
        self.active_rules.append(rule)

    def revert(self) -> None:
        """
        Remove every rule installed by this handler, newest first.

        All removals are attempted even if some of them fail, and the handler
        forgets all rules either way. Failures are raised afterwards as a single
        RemovalError. Reverting a handler without rules does nothing.
        """
        if not self.active_rules:
            return

        failures = []
        for rule in reversed(self.active_rules):
            args = self._command(rule, "-D")
            try:
                proc = self._execute(args)
            except OSError as e:
                logger.error(f"Cannot run {self.iptables}: {e}")
                failures.append((args, e))
                continue
            if proc.returncode != 0:
                logger.error(f"Removing redirection rule failed: {' '.join(args)}")
                failures.append((args, proc.returncode))
            else:
                logger.info(f"Removed redirection rule: {' '.join(args)}")
        self.active_rules = []

        if failures:
            raise exceptions.RemovalError(failures)

    def __enter__(self) -> RuleHandler:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.revert()
