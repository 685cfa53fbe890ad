"""
Tests for cknfs.prober: live probes against an in-process RPC server,
the wall-clock bound, the local daemon check, and the per-host cache.
"""

import os
import socket
import time

import pytest

from cknfs.models import FailureReason, Liveness, ProbeResult, Transport
from cknfs.mounts import make_record
from cknfs.prober import HostLivenessCache, LivenessProber, check_local_process

from conftest import FakeRpcServer


class TestProbe:
    def test_alive_over_tcp(self, rpc_server):
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        result = prober.probe("127.0.0.1", Transport.TCP, version=3)
        assert result.liveness == Liveness.ALIVE
        assert result.address == "127.0.0.1"
        assert result.port == rpc_server.port
        assert result.transport == Transport.TCP
        assert [a.step for a in result.attempts] == ["resolve", "getport", "null"]

    def test_any_transport_prefers_tcp(self):
        server = FakeRpcServer(udp=True)
        try:
            prober = LivenessProber(timeout=2, portmapper_port=server.port)
            result = prober.probe("127.0.0.1", Transport.ANY, version=3)
        finally:
            server.close()
        assert result.alive
        assert result.transport == Transport.TCP

    def test_udp_mount(self):
        server = FakeRpcServer(udp=True)
        try:
            prober = LivenessProber(timeout=2, portmapper_port=server.port)
            result = prober.probe("127.0.0.1", Transport.UDP, version=3)
        finally:
            server.close()
        assert result.alive
        assert result.port == server.udp_port
        assert result.transport == Transport.UDP

    def test_any_transport_tolerates_missing_udp(self, rpc_server):
        # TCP registered, UDP returns port 0
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        assert prober.probe("127.0.0.1", Transport.ANY, version=3).alive

    def test_unspecified_version_asks_for_v3(self, rpc_server):
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        assert prober.probe("127.0.0.1", version=0).alive

    def test_v4_skips_portmapper(self):
        server = FakeRpcServer(nfs_versions=(4,))
        try:
            prober = LivenessProber(timeout=2, portmapper_port=1, nfs_port=server.port)
            result = prober.probe("127.0.0.1", version=4)
        finally:
            server.close()
        assert result.alive
        assert [a.step for a in result.attempts] == ["resolve", "null"]

    def test_not_registered(self):
        server = FakeRpcServer(nfs_versions=(3,), registered=())
        try:
            prober = LivenessProber(timeout=2, portmapper_port=server.port)
            result = prober.probe("127.0.0.1", Transport.TCP, version=3)
        finally:
            server.close()
        assert result.liveness == Liveness.DEAD
        assert result.reason == FailureReason.SERVICE_NOT_REGISTERED

    def test_version_mismatch_is_rpc_failure(self):
        server = FakeRpcServer(nfs_versions=(3,), registered=(2, 3))
        try:
            prober = LivenessProber(timeout=2, portmapper_port=server.port)
            result = prober.probe("127.0.0.1", Transport.TCP, version=2)
        finally:
            server.close()
        assert result.liveness == Liveness.DEAD
        assert result.reason == FailureReason.RPC_FAILURE
        assert "mismatch" in result.detail

    def test_refused_portmapper(self, closed_port):
        prober = LivenessProber(timeout=2, portmapper_port=closed_port)
        result = prober.probe("127.0.0.1", Transport.TCP, version=3)
        assert result.liveness == Liveness.DEAD
        assert result.reason == FailureReason.RPC_FAILURE

    def test_unknown_host(self):
        prober = LivenessProber(timeout=2)
        result = prober.probe("no-such-host.invalid")
        assert result.liveness == Liveness.DEAD
        assert result.reason == FailureReason.ADDRESS_RESOLUTION

    def test_silent_server_is_bounded(self, silent_endpoint):
        timeout = 0.5
        prober = LivenessProber(timeout=timeout, portmapper_port=silent_endpoint)
        started = time.monotonic()
        result = prober.probe("127.0.0.1", Transport.TCP, version=3)
        elapsed = time.monotonic() - started
        assert result.liveness == Liveness.DEAD
        assert elapsed < timeout + 1.0

    def test_socket_creation_failure_is_dead(self, no_ipv6_sockets):
        prober = LivenessProber(timeout=1)
        result = prober.probe("::1", Transport.TCP, version=3)
        assert result.liveness == Liveness.DEAD
        assert result.reason == FailureReason.RPC_FAILURE
        assert "not supported" in result.detail

    def test_unusable_first_candidate_falls_through(self, rpc_server,
                                                    no_ipv6_sockets, monkeypatch):
        # multi-homed: an IPv6 address first, then the IPv4 one that answers
        def two_addresses(host, port, *args, **kwargs):
            return [
                (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("::1", 0, 0, 0)),
                (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", 0)),
            ]

        monkeypatch.setattr(socket, "getaddrinfo", two_addresses)
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        result = prober.probe("galileo", Transport.TCP, version=3)
        assert result.alive
        assert result.address == "127.0.0.1"
        getports = [a for a in result.attempts if a.step == "getport"]
        assert [a.ok for a in getports] == [False, True]

    def test_address_hint_is_used(self, rpc_server):
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        result = prober.probe("no-such-host.invalid", Transport.TCP, version=3,
                              address="127.0.0.1")
        assert result.alive
        assert result.host == "no-such-host.invalid"

    def test_probe_record_fills_address(self, rpc_server):
        record = make_record("127.0.0.1:/export", "/net/local", "nfs",
                             "vers=3,proto=tcp")
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port)
        assert prober.probe_record(record).alive
        assert record.address == "127.0.0.1"


class TestEvents:
    def test_start_and_done(self, rpc_server):
        events = []
        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port,
                                event_callback=events.append)
        prober.probe("127.0.0.1", Transport.TCP, version=3, directory="/net/x")
        assert [e.event for e in events] == ["probe_start", "probe_done"]
        assert events[0].directory == "/net/x"
        assert events[1].liveness == Liveness.ALIVE

    def test_broken_callback_does_not_break_probe(self, rpc_server):
        def explode(evt):
            raise RuntimeError("boom")

        prober = LivenessProber(timeout=2, portmapper_port=rpc_server.port,
                                event_callback=explode)
        assert prober.probe("127.0.0.1", Transport.TCP, version=3).alive


class TestLocalDaemon:
    def test_own_process_is_alive(self):
        ok, detail = check_local_process(os.getpid())
        assert ok, detail

    def test_invalid_pid(self):
        ok, _ = check_local_process(0)
        assert not ok

    def test_missing_process(self):
        # pid_max on Linux never exceeds 2**22
        ok, detail = check_local_process(2 ** 22 + 1)
        assert not ok
        assert "no such process" in detail

    def test_stalled_state(self, tmp_path):
        pid = os.getpid()
        (tmp_path / str(pid)).mkdir()
        (tmp_path / str(pid) / "stat").write_text(f"{pid} (auto mount) D 1 1 1\n")
        ok, detail = check_local_process(pid, proc_root=str(tmp_path))
        assert not ok
        assert "uninterruptible" in detail

    def test_daemon_record(self):
        record = make_record("newton:(pid%d)" % os.getpid(), "/net", "nfs")
        prober = LivenessProber(timeout=1)
        result = prober.probe_record(record)
        assert result.alive
        assert result.host == f"pid:{os.getpid()}"
        assert result.attempts == []


class TestHostLivenessCache:
    def test_probes_each_host_once(self):
        cache = HostLivenessCache()
        calls = []

        def probe():
            calls.append(1)
            return ProbeResult(host="newton", liveness=Liveness.DEAD,
                               reason=FailureReason.CONNECT_TIMEOUT)

        assert cache.resolve("newton", probe) == Liveness.DEAD
        assert cache.resolve("NEWTON.", probe) == Liveness.DEAD
        assert calls == [1]
        assert cache.probes == 1
        assert cache.result("newton").reason == FailureReason.CONNECT_TIMEOUT

    def test_accepts_bare_liveness(self):
        cache = HostLivenessCache()
        assert cache.resolve("galileo", lambda: Liveness.ALIVE) == Liveness.ALIVE
        assert cache.state("galileo") == Liveness.ALIVE
        assert "galileo" in cache

    def test_undecided_counts_as_dead(self):
        cache = HostLivenessCache()
        assert cache.resolve("kepler", lambda: Liveness.UNCHECKED) == Liveness.DEAD

    def test_unknown_host_is_unchecked(self):
        cache = HostLivenessCache()
        assert cache.state("tycho") == Liveness.UNCHECKED
        assert cache.result("tycho") is None
        assert len(cache) == 0

    @pytest.mark.parametrize("first,second", [
        ("[fe80::1]", "fe80::1"),
        ("Newton", "newton"),
    ])
    def test_identity_is_normalized(self, first, second):
        cache = HostLivenessCache()
        cache.resolve(first, lambda: Liveness.ALIVE)
        assert second in cache
