"""Tests for the command line interface, run against the simulated cloud."""

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from tierstack.cli.main import cli

from conftest import network, three_tier_descriptors


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Working directory holding a valid tierstack.yaml."""
    monkeypatch.chdir(tmp_path)
    data = {
        'project': {'name': 'shop', 'environment': 'dev', 'region': 'us-east-1'},
        'execution': {'mode': 'sequential', 'max_workers': 2},
        'resources': three_tier_descriptors(),
    }
    (tmp_path / 'tierstack.yaml').write_text(yaml.safe_dump(data, sort_keys=False))
    return tmp_path


def invoke(*args):
    return CliRunner().invoke(cli, ['--log-level', 'error'] + list(args), obj={})


class TestValidateAndPlan:

    def test_validate(self, project):
        result = invoke('validate')

        assert result.exit_code == 0, result.output
        assert 'Configuration is valid' in result.output

    def test_validate_reports_problems(self, project):
        (project / 'broken.yaml').write_text(yaml.safe_dump({
            'project': {'name': 'shop', 'region': 'us-east-1'},
            'resources': [network('v1'), network('v1')],
        }))

        result = invoke('--config', 'broken.yaml', 'validate')

        assert result.exit_code == 1
        assert '[duplicate_name]' in result.output

    def test_missing_config(self, project):
        result = invoke('--config', 'nope.yaml', 'validate')

        assert result.exit_code == 1
        assert 'not found' in result.output

    def test_plan_shows_waves(self, project):
        result = invoke('plan')

        assert result.exit_code == 0, result.output
        assert 'wave(s)' in result.output
        assert 'vpc' in result.output

    def test_graph_dot(self, project):
        result = invoke('graph', '--format', 'dot')

        assert result.exit_code == 0, result.output
        assert 'digraph ResourceDependencies' in result.output
        assert '"vpc" -> "web-a";' in result.output

    def test_graph_dot_to_file(self, project):
        result = invoke('graph', '--format', 'dot', '--output', 'graph.dot')

        assert result.exit_code == 0, result.output
        assert (project / 'graph.dot').read_text().startswith('digraph')


class TestApplyDestroyStatus:

    def test_status_before_any_run(self, project):
        result = invoke('status', '--simulate')

        assert result.exit_code == 0
        assert 'No runs recorded' in result.output

    def test_simulated_apply(self, project):
        result = invoke('apply', '--simulate', '--concurrent', '--max-workers', '3')

        assert result.exit_code == 0, result.output
        assert 'Apply complete' in result.output

        state = json.loads((project / '.tierstack' / 'state' / 'shop-dev.simulated.json').read_text())
        assert state['status'] == 'completed'
        assert state['operation'] == 'apply'
        assert len(state['resources']) == len(three_tier_descriptors())

    def test_status_after_apply(self, project):
        invoke('apply', '--simulate')

        result = invoke('status', '--simulate')

        assert result.exit_code == 0, result.output
        assert 'Apply of shop-dev' in result.output
        assert 'completed' in result.output

    def test_simulated_destroy(self, project):
        result = invoke('destroy', '--simulate', '--yes')

        assert result.exit_code == 0, result.output
        assert 'Destruction successful' in result.output

    def test_destroy_can_be_declined(self, project):
        result = CliRunner().invoke(cli, ['--log-level', 'error', 'destroy', '--simulate'], input='n\n', obj={})

        assert result.exit_code == 0
        assert 'Destruction cancelled' in result.output
        assert not (project / '.tierstack' / 'state' / 'shop-dev.simulated.json').exists()

    def test_invalid_max_workers(self, project):
        result = invoke('apply', '--simulate', '--max-workers', '0')

        assert result.exit_code == 2
