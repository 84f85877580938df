import subprocess
from types import SimpleNamespace
from unittest import mock

import dns.exception
import dns.name
import dns.resolver
import pytest

from pxcoperator.peerlist import find_domain, lookup, main, shell_out


def _srv(*targets):
    return [SimpleNamespace(target=dns.name.from_text(t)) for t in targets]


K8S_RESOLV = (
    "nameserver 10.0.0.10\n"
    "search default.svc.cluster.local svc.cluster.local cluster.local\n"
    "options ndots:5\n"
)


def test_find_domain_without_namespace_takes_full_entry():
    assert find_domain(K8S_RESOLV, "") == "default.svc.cluster.local"


def test_find_domain_with_namespace_prefixes_svc_entry():
    text = "search ns1.svc.cluster.local svc.cluster.local cluster.local\n"
    assert find_domain(text, "ns1") == "ns1.svc.cluster.local"


def test_find_domain_prefixes_given_namespace():
    assert find_domain("search svc.example.internal\n", "team") == "team.svc.example.internal"


def test_find_domain_without_search_line_is_empty():
    assert find_domain("nameserver 10.0.0.10\noptions ndots:5\n", "") == ""


def test_find_domain_without_svc_entry_is_empty():
    assert find_domain("search a.example b.example c.example d.example\n", "") == ""


def test_lookup_strips_root_dot():
    with mock.patch("dns.resolver.resolve", return_value=_srv("b.example.com", "a.example.com")) as res:
        peers = lookup("svc.example.com")
    assert peers == {"a.example.com", "b.example.com"}
    res.assert_called_once_with("svc.example.com", "SRV")


def test_lookup_propagates_not_found():
    with mock.patch("dns.resolver.resolve", side_effect=dns.resolver.NXDOMAIN()):
        with pytest.raises(dns.resolver.NXDOMAIN):
            lookup("missing.example.com")


def test_shell_out_feeds_stdin():
    assert shell_out("a\nb", "cat") == "a\nb\n"


def test_shell_out_failure_raises():
    with pytest.raises(subprocess.CalledProcessError) as info:
        shell_out("x", "echo boom; exit 3")
    assert info.value.returncode == 3
    assert "boom" in info.value.output


def test_main_incomplete_args():
    assert main(["-domain=cluster.local", "-ns=ns1"]) == 1


def test_main_runs_on_start_with_sorted_peers(tmp_path):
    out = tmp_path / "peers.txt"
    with mock.patch("dns.resolver.resolve", return_value=_srv("b.example.com", "a.example.com")), \
            mock.patch("time.sleep"):
        status = main([
            "-service=svc", "-ns=ns1", "-domain=cluster.local",
            f"-on-start=cat > {out}",
        ])
    assert status == 0
    assert out.read_text() == "a.example.com\nb.example.com\n"


def test_main_lookup_error_without_change_skips_script(tmp_path):
    out = tmp_path / "peers.txt"
    with mock.patch("dns.resolver.resolve", side_effect=dns.exception.Timeout()), \
            mock.patch("time.sleep"):
        status = main([
            "--service", "svc", "--ns", "ns1", "--domain", "cluster.local",
            "--on-start", f"cat > {out}",
        ])
    assert status == 0
    assert not out.exists()


def test_main_failing_script_returns_error():
    with mock.patch("dns.resolver.resolve", return_value=_srv("a.example.com")), \
            mock.patch("time.sleep"):
        status = main(["-service=svc", "-ns=ns1", "-domain=cluster.local", "-on-start=exit 2"])
    assert status == 1