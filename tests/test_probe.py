"""Unit tests for probe configuration, ping parsing and the probe adapters."""

import asyncio
import threading

import pytest
import speedtest

import probe
from probe import (
    Config,
    LatencyConfig,
    LatencyParseError,
    LatencyProbe,
    NoInternetError,
    ProbeError,
    ProbeTimeoutError,
    ThroughputConfig,
    ThroughputProbe,
    ThroughputResult,
    config_from_dict,
    default_log_path,
    load_config,
    parse_latency_output,
)

LINUX_OUTPUT = """PING google.com (142.250.185.46) 56(84) bytes of data.
64 bytes from lga25s78-in-f14.1e100.net (142.250.185.46): icmp_seq=1 ttl=117 time=12.1 ms
64 bytes from lga25s78-in-f14.1e100.net (142.250.185.46): icmp_seq=2 ttl=117 time=12.5 ms

--- google.com ping statistics ---
2 packets transmitted, 2 received, 0% packet loss, time 1001ms
rtt min/avg/max/mdev = 10.1/12.3/15.0/1.2 ms
"""

MACOS_OUTPUT = """PING google.com (172.217.14.206): 56 data bytes
64 bytes from 172.217.14.206: icmp_seq=0 ttl=56 time=8.123 ms

--- google.com ping statistics ---
1 packets transmitted, 1 packets received, 0.0% packet loss
round-trip min/avg/max/stddev = 8.123/8.123/8.123/0.000 ms
"""


class TestParseLatencyOutput:
    """Test extraction of the average RTT from the ping summary line."""

    def test_linux_summary(self):
        assert parse_latency_output(LINUX_OUTPUT) == 12.3

    def test_summary_without_trailing_newline(self):
        assert parse_latency_output(LINUX_OUTPUT.rstrip("\n")) == 12.3

    def test_macos_summary(self):
        assert parse_latency_output(MACOS_OUTPUT) == 8.123

    def test_integer_average(self):
        assert parse_latency_output("rtt min/avg/max/mdev = 9/11/13/1 ms\n") == 11.0

    def test_empty_output(self):
        with pytest.raises(LatencyParseError):
            parse_latency_output("")

    def test_summary_missing(self):
        output = "64 bytes from 1.1.1.1: icmp_seq=1 ttl=57 time=9.1 ms\n"
        with pytest.raises(LatencyParseError):
            parse_latency_output(output)

    def test_parse_error_is_probe_error(self):
        with pytest.raises(ProbeError) as exc:
            parse_latency_output("Request timed out.\n")
        assert exc.value.tag == "parse_error"


class TestConfig:
    """Test config defaults, YAML loading and validation."""

    def test_defaults(self):
        cfg = load_config(None)
        assert cfg.cycle_ticks == 60
        assert cfg.tick_secs == 1.0
        assert cfg.start_delay_secs == 2.0
        assert cfg.step_delay_secs == 2.0
        assert cfg.latency == LatencyConfig(host="google.com", timeout_secs=10, count=10)
        assert cfg.throughput == ThroughputConfig(max_time_secs=7.5, ping_count=2, max_servers=2, deadline_secs=45.0)
        assert cfg.resolved_log_path() == default_log_path()
        assert default_log_path().endswith("netpulse.csv")

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "netpulse.yaml"
        path.write_text(
            "cycle_ticks: 30\n"
            "step_delay_secs: 0\n"
            f"log_path: {tmp_path / 'x.csv'}\n"
            "latency:\n  host: 1.1.1.1\n  count: 3\n"
            "throughput:\n  deadline_secs: 20\n"
        )
        cfg = load_config(str(path))
        assert cfg.cycle_ticks == 30
        assert cfg.step_delay_secs == 0
        assert cfg.resolved_log_path() == str(tmp_path / "x.csv")
        assert cfg.latency.host == "1.1.1.1"
        assert cfg.latency.count == 3
        assert cfg.latency.timeout_secs == 10
        assert cfg.throughput.deadline_secs == 20.0
        assert cfg.throughput.max_servers == 2

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == Config()

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown config key"):
            config_from_dict({"cycle_tick": 5})

    def test_non_positive(self):
        with pytest.raises(ValueError, match="throughput.deadline_secs"):
            config_from_dict({"throughput": {"deadline_secs": 0}})

    def test_not_a_number(self):
        with pytest.raises(ValueError, match="cycle_ticks"):
            config_from_dict({"cycle_ticks": "often"})

    def test_empty_host(self):
        with pytest.raises(ValueError, match="latency.host"):
            config_from_dict({"latency": {"host": "  "}})

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError):
            load_config(str(path))


class _FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.hang = hang
        self.killed = False
        self.waited = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(3600)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        self.waited = True
        return self.returncode


class TestLatencyProbe:
    """Test the ping subprocess adapter with a faked process."""

    def _patch(self, monkeypatch, proc):
        calls = []

        async def fake_exec(*cmd, **kwargs):
            calls.append(cmd)
            return proc
        monkeypatch.setattr(probe.asyncio, "create_subprocess_exec", fake_exec)
        return calls

    def test_build_command_linux(self):
        p = LatencyProbe(LatencyConfig(host="example.com", timeout_secs=10, count=10))
        p.system = "Linux"
        assert p.build_command() == ["ping", "-n", "-c", "10", "-W", "10", "example.com"]

    def test_build_command_macos(self):
        p = LatencyProbe(LatencyConfig(host="example.com", timeout_secs=10, count=4))
        p.system = "Darwin"
        assert p.build_command() == ["ping", "-n", "-c", "4", "example.com"]

    async def test_success(self, monkeypatch):
        calls = self._patch(monkeypatch, _FakeProcess(stdout=LINUX_OUTPUT.encode()))
        value = await LatencyProbe(LatencyConfig()).measure()
        assert value == 12.3
        assert calls[0][0] == "ping"
        assert calls[0][-1] == "google.com"

    async def test_unreachable(self, monkeypatch):
        self._patch(monkeypatch, _FakeProcess(stderr=b"ping: unknown host", returncode=2))
        with pytest.raises(NoInternetError) as exc:
            await LatencyProbe(LatencyConfig()).measure()
        assert exc.value.tag == "no_internet"

    async def test_unparseable_output(self, monkeypatch):
        self._patch(monkeypatch, _FakeProcess(stdout=b"something odd\n"))
        with pytest.raises(LatencyParseError):
            await LatencyProbe(LatencyConfig()).measure()

    async def test_hang_is_killed(self, monkeypatch):
        proc = _FakeProcess(hang=True)
        self._patch(monkeypatch, proc)
        p = LatencyProbe(LatencyConfig(timeout_secs=1, count=1))
        monkeypatch.setattr(LatencyProbe, "overall_timeout", property(lambda self: 0.05))
        with pytest.raises(ProbeTimeoutError):
            await p.measure()
        assert proc.killed
        assert proc.waited

    async def test_cancelled_measure_kills_child(self, monkeypatch):
        proc = _FakeProcess(hang=True)
        self._patch(monkeypatch, proc)
        task = asyncio.create_task(LatencyProbe(LatencyConfig()).measure())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert proc.killed
        assert proc.waited

    async def test_missing_binary(self, monkeypatch):
        async def fake_exec(*cmd, **kwargs):
            raise FileNotFoundError("ping")
        monkeypatch.setattr(probe.asyncio, "create_subprocess_exec", fake_exec)
        with pytest.raises(ProbeError, match="not found"):
            await LatencyProbe(LatencyConfig()).measure()


class _FakeSpeedtest:
    instances = []

    def __init__(self, timeout=10, secure=False, **kwargs):
        self.timeout = timeout
        self.secure = secure
        self.config = {"length": {"download": 10, "upload": 10}}
        self.closest_limit = None
        _FakeSpeedtest.instances.append(self)

    def get_servers(self):
        return {}

    def get_closest_servers(self, limit=5):
        self.closest_limit = limit
        return [{"sponsor": "A", "host": "a:8080"}, {"sponsor": "B", "host": "b:8080"}][:limit]

    def get_best_server(self, servers=None):
        return servers[0]

    def download(self):
        return 80_000_000.0

    def upload(self, pre_allocate=True):
        return 16_000_000.0


class TestThroughputProbe:
    """Test the speedtest-cli adapter with a faked library client."""

    def test_result_units(self):
        res = ThroughputResult.from_bits(upload_bps=16_000_000, download_bps=80_000_000)
        assert res.upload == 2_000_000
        assert res.download == 10_000_000
        assert res.human_upload == 16.0
        assert res.human_download == 80.0

    async def test_measure_passes_config(self, monkeypatch):
        _FakeSpeedtest.instances.clear()
        monkeypatch.setattr(speedtest, "Speedtest", _FakeSpeedtest)
        p = ThroughputProbe(ThroughputConfig(max_time_secs=7.5, max_servers=2))
        res = await p.measure()
        st = _FakeSpeedtest.instances[-1]
        assert st.timeout == 7.5
        assert st.config["length"] == {"download": 7.5, "upload": 7.5}
        assert st.closest_limit == 2
        assert res.human_download == 80.0
        assert res.human_upload == 16.0

    async def test_library_error_becomes_probe_error(self, monkeypatch):
        class Broken(_FakeSpeedtest):
            def get_servers(self):
                raise speedtest.ConfigRetrievalError("no config")
        monkeypatch.setattr(speedtest, "Speedtest", Broken)
        p = ThroughputProbe(ThroughputConfig())
        with pytest.raises(ProbeError) as exc:
            await p.measure()
        assert exc.value.tag == "probe_error"

    async def test_socket_error_becomes_probe_error(self, monkeypatch):
        class Offline(_FakeSpeedtest):
            def download(self):
                raise OSError("network is unreachable")
        monkeypatch.setattr(speedtest, "Speedtest", Offline)
        p = ThroughputProbe(ThroughputConfig())
        with pytest.raises(ProbeError, match="unreachable"):
            await p.measure()

    async def test_hung_run_does_not_block_next_run(self, monkeypatch):
        _FakeSpeedtest.instances.clear()
        release = threading.Event()
        workers = []

        class HangsOnce(_FakeSpeedtest):
            def get_servers(self):
                workers.append(threading.current_thread())
                if self is _FakeSpeedtest.instances[0]:
                    release.wait(5)
                return {}
        monkeypatch.setattr(speedtest, "Speedtest", HangsOnce)
        p = ThroughputProbe(ThroughputConfig())
        try:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(p.measure(), timeout=0.2)
            res = await asyncio.wait_for(p.measure(), timeout=2)
        finally:
            release.set()
        assert res.human_download == 80.0
        assert len(_FakeSpeedtest.instances) == 2
        assert workers[0] is not workers[1]
        assert all(t.daemon for t in workers)
