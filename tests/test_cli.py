"""Tests for the click command-line interface."""

import json

import httpx
import pytest
from click.testing import CliRunner

from ethspeed import cli as cli_module
from ethspeed.api import create_app
from ethspeed.stats import StatsAggregator
from ethspeed.transfer import TestRunner


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('SERVER', 'DIRECTION', 'SIZE', 'COUNT', 'PORT', 'HOST', 'STATIC_DIR', 'LOG_LEVEL'):
        monkeypatch.delenv(f'ETHSPEED_{name}', raising=False)


@pytest.fixture
def stats(monkeypatch):
    """Route every TestRunner the CLI builds to an in-process app."""
    stats = StatsAggregator()
    app = create_app(stats)

    def runner_factory(server, timeout=None):
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        runner = TestRunner(server, client=client)
        runner._owns_client = True
        return runner

    monkeypatch.setattr(cli_module, 'TestRunner', runner_factory)
    return stats


def invoke(*args):
    return CliRunner().invoke(cli_module.cli, list(args), obj={})


class TestClientCommand:
    def test_rejects_bad_size(self):
        result = invoke('client', '-s', '0')
        assert result.exit_code == 2
        assert "size must be at least 1 MB" in result.output

    def test_rejects_bad_direction(self):
        result = invoke('client', '-d', 'sideways')
        assert result.exit_code == 2

    def test_download_run(self, stats):
        result = invoke('client', '-S', 'testserver', '-d', 'down', '-s', '2', '-c', '1')

        assert result.exit_code == 0, result.output
        assert "Speed Test - 2 MB per run" in result.output
        assert "Total time:" in result.output
        assert stats.snapshot().total_bytes_down == 2_000_000

    def test_json_report(self, stats):
        result = invoke('client', '-S', 'testserver', '-d', 'up', '-s', '2', '--json')

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report['ok'] is True
        assert len(report['results']['up']['runs']) == 1

    def test_failure_exit_code(self, monkeypatch):
        def refusing_factory(server, timeout=None):
            def handler(request):
                raise httpx.ConnectError("connection refused", request=request)
            runner = TestRunner(server, client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler)))
            runner._owns_client = True
            return runner

        monkeypatch.setattr(cli_module, 'TestRunner', refusing_factory)

        result = invoke('client', '-S', 'nowhere:1', '-d', 'down', '-s', '1')
        assert result.exit_code == 1
        assert "ERROR: download test 1" in result.output


class TestStatsCommand:
    def test_panel(self, stats):
        stats.record_upload(3_000_000)

        result = invoke('stats', '-S', 'testserver')

        assert result.exit_code == 0, result.output
        assert "Uploads: 1" in result.output
        assert "Connections: 1" in result.output


class TestConfigCommand:
    def test_example_is_valid_json(self):
        result = invoke('config', '--example')

        assert result.exit_code == 0
        example = json.loads(result.output)
        assert set(example) == {'server', 'client'}

    def test_effective_config(self, tmp_path, monkeypatch):
        path = tmp_path / "ethspeed.json"
        path.write_text(json.dumps({"server": {"port": 9000}, "client": {"size": 25}}))
        monkeypatch.setenv('ETHSPEED_COUNT', '3')

        result = invoke('--config', str(path), 'config')

        assert result.exit_code == 0, result.output
        effective = json.loads(result.output)
        assert effective['server']['port'] == 9000
        assert effective['server']['static_dir'] is None
        assert effective['client']['size'] == 25
        assert effective['client']['count'] == 3


class TestServerCommand:
    def test_rejects_bad_port(self):
        result = invoke('server', '--port', '0')
        assert result.exit_code == 2
        assert "port must be between" in result.output
