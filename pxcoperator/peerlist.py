"""Watch the SRV records of a service and run scripts when its peers change."""

from __future__ import annotations

import argparse
import logging
import os
import re
import signal
import subprocess
import sys
import time
from pathlib import Path

import dns.exception
import dns.resolver

log = logging.getLogger(__name__)

POLL_PERIOD = 1.0
RESOLV_CONF = Path("/etc/resolv.conf")

_WS = r"[\t\n\f\r ]"
# A "search" line at the start of a line, then anything that starts and ends
# with whitespace, then the wanted domain. The greedy parts make the last
# matching search line and the last matching domain on it win.
_SEARCH_PREFIX = r"\A(?:[^\n]*\n)*search" + _WS + r"(?:[\s\S]*" + _WS + r")?"
_CLUSTER_DOMAIN_RE = re.compile(
    _SEARCH_PREFIX
    + r"(?P<goal>[a-zA-Z0-9-]{1,63}.svc.(?:[a-zA-Z0-9-]{1,63}\.)*[a-zA-Z0-9]{2,63})"
)
_SVC_DOMAIN_RE = re.compile(
    _SEARCH_PREFIX + r"(?P<goal>svc.(?:[a-zA-Z0-9-]{1,63}\.)*[a-zA-Z0-9]{2,63})"
)

_NOT_FOUND = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer)


def lookup(service_name):
    """Return the set of host names behind the SRV records of ``service_name``."""
    answer = dns.resolver.resolve(service_name, "SRV")
    # The SRV targets end in a "." for the root domain.
    return {record.target.to_text()[:-1] for record in answer}


def find_domain(resolv_conf, namespace):
    """Return the cluster domain found in the text of a resolv.conf.

    Without a namespace a full ``<ns>.svc.<domain>`` entry is looked for;
    with one, a ``svc.<domain>`` entry is looked for and the namespace is
    put in front of it. An empty string means nothing was found.
    """
    pattern = _SVC_DOMAIN_RE if namespace else _CLUSTER_DOMAIN_RE
    match = pattern.search(resolv_conf)
    if match is None:
        return ""
    goal = match.group("goal")
    return f"{namespace}.{goal}" if namespace else goal


def shell_out(stdin_text, script):
    """Run ``script`` with bash, feeding it ``stdin_text``; return its output.

    Raises subprocess.CalledProcessError when the script fails.
    """
    log.info("execing: %s with stdin: %s", script, stdin_text)
    result = subprocess.run(
        ["bash", "-c", script],
        input=stdin_text + "\n",
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, ["bash", "-c", script], output=result.stdout
        )
    log.info("%s", result.stdout)
    return result.stdout


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peer-list",
        description="Look up the host names of the endpoints of a service.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-on-change", "--on-change", dest="on_change", default="",
        help="Script to run on change, must accept a new line separated list of peers via stdin.",
    )
    parser.add_argument(
        "-on-start", "--on-start", dest="on_start", default="",
        help="Script to run on start, must accept a new line separated list of peers via stdin.",
    )
    parser.add_argument(
        "-service", "--service", dest="service", default="",
        help="Governing service responsible for the DNS records of the domain this pod is in.",
    )
    parser.add_argument(
        "-ns", "--ns", dest="namespace", default="",
        help="The namespace this pod is running in. If unspecified, the POD_NAMESPACE env var is used.",
    )
    parser.add_argument(
        "-domain", "--domain", dest="domain", default="",
        help="The cluster domain; if not set it is determined from /etc/resolv.conf.",
    )
    return parser


def _exit_on_signal(signum, frame):
    raise SystemExit(0)


def _watch(service, on_start, on_change) -> int:
    script = on_start
    if not script:
        script = on_change
        log.info("No on-start supplied, on-change %s will be applied on start.", script)

    peers: set[str] = set()
    while script:
        try:
            new_peers = lookup(service)
        except dns.exception.DNSException as exc:
            log.info("%s", exc)
            if isinstance(exc, _NOT_FOUND):
                # Service not resolved: no endpoints, so reset the peer list.
                peers = set()
                time.sleep(POLL_PERIOD)
                continue
            new_peers = set()

        if peers != new_peers:
            log.info("Peer list updated\nwas %s\nnow %s", sorted(peers), sorted(new_peers))
            try:
                shell_out("\n".join(sorted(new_peers)), script)
            except (subprocess.CalledProcessError, OSError) as exc:
                output = getattr(exc, "output", "") or ""
                log.error("Failed to execute %s: %s, err: %s", script, output, exc)
                return 1
            peers = new_peers
        script = on_change
        if script:
            time.sleep(POLL_PERIOD)

    log.info("Peer finder exiting")
    return 0


def main(argv=None):
    """Run the peer finder; return the process exit status."""
    args = _parser().parse_args(sys.argv[1:] if argv is None else list(argv))
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    # The proxy image stops its container with SIGUSR1.
    previous = None
    if hasattr(signal, "SIGUSR1"):
        previous = signal.signal(signal.SIGUSR1, _exit_on_signal)
    try:
        namespace = args.namespace or os.environ.get("POD_NAMESPACE", "")
        log.info("Peer finder enter")

        if not args.domain:
            try:
                resolv_conf = RESOLV_CONF.read_text()
            except OSError:
                log.error("Unable to read %s", RESOLV_CONF)
                return 1
            domain_name = find_domain(resolv_conf, namespace)
            log.info("Determined Domain to be %s", domain_name)
        else:
            domain_name = ".".join([namespace, "svc", args.domain])

        if not args.service or not domain_name or not (args.on_change or args.on_start):
            log.error(
                "Incomplete args, require -on-change and/or -on-start, -service and -ns "
                "or an env var for POD_NAMESPACE."
            )
            return 1

        return _watch(args.service, args.on_start, args.on_change)
    finally:
        if previous is not None:
            signal.signal(signal.SIGUSR1, previous)


if __name__ == "__main__":
    raise SystemExit(main())