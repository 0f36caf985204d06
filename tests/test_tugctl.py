"""Unit tests for the tugctl command line client."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from click.testing import CliRunner

import tugctl
from tugctl import cli

BASE = "http://localhost:8000/api/v1"


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"" if body is None else json.dumps(body).encode()
    response.json.return_value = body
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error", response=response
        )
    return response


def _resource(**overrides):
    resource = {
        "id": 1,
        "kind": "TugResource",
        "namespace": "default",
        "name": "test-tug",
        "spec": {"authoritative_value": 2, "contended_value": 1},
        "status": {
            "conditions": [
                {"type": "Ready", "status": "True"},
                {"type": "Synced", "status": "False"},
            ]
        },
        "generation": 2,
        "observed_generation": 1,
    }
    resource.update(overrides)
    return resource


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def request_mock():
    with patch.object(tugctl.requests, "request") as mock:
        yield mock


class TestApply:
    def test_creates_when_missing(self, runner, request_mock, tmp_path):
        manifest = tmp_path / "tug.yaml"
        manifest.write_text(
            "kind: TugResource\n"
            "name: test-tug\n"
            "spec:\n"
            "  authoritative_value: 2\n"
            "  contended_value: 1\n"
        )
        request_mock.side_effect = [_response(404), _response(201, _resource(generation=1))]

        result = runner.invoke(cli, ["apply", "-f", str(manifest)])

        assert result.exit_code == 0, result.output
        assert "TugResource/default/test-tug created" in result.output
        assert "Generation: 1" in result.output
        method, url = request_mock.call_args.args
        assert (method, url) == ("POST", f"{BASE}/resources")
        assert request_mock.call_args.kwargs["json"]["spec"] == {
            "authoritative_value": 2,
            "contended_value": 1,
        }

    def test_overwrites_existing(self, runner, request_mock, tmp_path):
        manifest = tmp_path / "tug.json"
        manifest.write_text(
            json.dumps(
                {
                    "kind": "TugResource",
                    "name": "test-tug",
                    "namespace": "team-a",
                    "spec": {"authoritative_value": 5, "contended_value": 1},
                }
            )
        )
        request_mock.side_effect = [_response(200, _resource(id=7)), _response(200, _resource(id=7))]

        result = runner.invoke(cli, ["apply", "-f", str(manifest)])

        assert result.exit_code == 0, result.output
        assert "TugResource/team-a/test-tug configured" in result.output
        first, second = request_mock.call_args_list
        assert first.args == (
            "GET",
            f"{BASE}/resources/by-name/TugResource/team-a/test-tug",
        )
        assert second.args == ("PUT", f"{BASE}/resources/7")
        assert second.kwargs["json"] == {
            "spec": {"authoritative_value": 5, "contended_value": 1}
        }

    def test_overwrite_carries_management_policies(self, runner, request_mock, tmp_path):
        manifest = tmp_path / "tug.yaml"
        manifest.write_text(
            "kind: TugResource\n"
            "name: test-tug\n"
            "management_policies: [Observe]\n"
            "spec:\n"
            "  authoritative_value: 2\n"
            "  contended_value: 1\n"
        )
        request_mock.side_effect = [_response(200, _resource()), _response(200, _resource())]

        result = runner.invoke(cli, ["apply", "-f", str(manifest)])

        assert result.exit_code == 0, result.output
        assert request_mock.call_args.kwargs["json"] == {
            "spec": {"authoritative_value": 2, "contended_value": 1},
            "management_policies": ["Observe"],
        }


class TestGet:
    def test_table(self, runner, request_mock):
        request_mock.return_value = _response(200, [_resource()])

        result = runner.invoke(cli, ["get", "--kind", "TugResource"])

        assert result.exit_code == 0, result.output
        assert "test-tug" in result.output
        assert "1/2" in result.output
        assert request_mock.call_args.kwargs["params"] == {"kind": "TugResource"}

    def test_empty(self, runner, request_mock):
        request_mock.return_value = _response(200, [])
        result = runner.invoke(cli, ["get"])
        assert "No resources found" in result.output

    def test_json_output(self, runner, request_mock):
        request_mock.return_value = _response(200, [_resource()])
        result = runner.invoke(cli, ["get", "-o", "json"])
        assert json.loads(result.output)[0]["name"] == "test-tug"

    def test_api_url_option(self, runner, request_mock):
        request_mock.return_value = _response(200, [])
        runner.invoke(cli, ["--api-url", "http://tug:9000/api/v1/", "get"])
        assert request_mock.call_args.args[1] == "http://tug:9000/api/v1/resources"


class TestSet:
    def test_overwrites_one_value(self, runner, request_mock):
        request_mock.side_effect = [
            _response(200, _resource()),
            _response(200, _resource(generation=3)),
        ]

        result = runner.invoke(cli, ["set", "1", "--contended", "9"])

        assert result.exit_code == 0, result.output
        assert "Resource updated" in result.output
        put = request_mock.call_args
        assert put.args == ("PUT", f"{BASE}/resources/1")
        assert put.kwargs["json"] == {
            "spec": {"authoritative_value": 2, "contended_value": 9}
        }

    def test_requires_a_value(self, runner, request_mock):
        result = runner.invoke(cli, ["set", "1"])
        assert result.exit_code == 2
        request_mock.assert_not_called()


class TestOtherCommands:
    def test_delete(self, runner, request_mock):
        request_mock.return_value = _response(202, {"message": "ok"})

        result = runner.invoke(cli, ["delete", "1", "--yes"])

        assert result.exit_code == 0
        assert "Resource marked for deletion" in result.output
        assert request_mock.call_args.args == ("DELETE", f"{BASE}/resources/1")

    def test_reconcile(self, runner, request_mock):
        request_mock.return_value = _response(202, {"message": "ok"})
        result = runner.invoke(cli, ["reconcile", "1"])
        assert "Reconciliation triggered successfully" in result.output

    def test_history(self, runner, request_mock):
        request_mock.return_value = _response(
            200,
            [
                {
                    "id": 4,
                    "generation": 2,
                    "success": False,
                    "action": "update",
                    "trigger_reason": "retry",
                    "drift_detected": True,
                    "reconcile_time": "2024-01-15T10:30:00",
                    "error_message": "cannot update Tug: store down",
                }
            ],
        )

        result = runner.invoke(cli, ["history", "1", "-l", "5"])

        assert "cannot update Tug: store down" in result.output
        assert request_mock.call_args.kwargs["params"] == {"limit": 5}

    def test_providers(self, runner, request_mock):
        request_mock.return_value = _response(
            200, [{"name": "tug", "version": "1.0.0", "kinds": ["TugResource"]}]
        )
        result = runner.invoke(cli, ["providers"])
        assert "TugResource" in result.output

    def test_http_error_exits_non_zero(self, runner, request_mock):
        request_mock.return_value = _response(404, {"detail": "Resource not found"})

        result = runner.invoke(cli, ["describe", "99"])

        assert result.exit_code == 1
        assert "Resource not found" in result.output

    def test_connection_error(self, runner, request_mock):
        request_mock.side_effect = requests.exceptions.ConnectionError("refused")
        result = runner.invoke(cli, ["reconcile", "1"])
        assert result.exit_code == 1
