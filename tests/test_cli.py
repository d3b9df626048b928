"""Tests for the command-line interface."""

from __future__ import annotations

import io
import json

import aiohttp
import pytest

from labconnect.cli import (
    _parse_fields,
    build_parser,
    cmd_config_get,
    cmd_config_set,
    main,
)
from labconnect.config import Config

HOST = "gitlab.example.com"
API = f"https://{HOST}/api/v4"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    monkeypatch.delenv("GITLAB_TOKEN", raising=False)
    monkeypatch.delenv("GITLAB_HOST", raising=False)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "labconnect" / "config.json"


def _write_config(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


# -------------------------------------------------------------------
# Parser
# -------------------------------------------------------------------


class TestBuildParser:
    def test_api_defaults(self):
        args = build_parser().parse_args(["api", "user"])
        assert args.command == "api"
        assert args.method == "GET"
        assert args.field == []
        assert args.verbose is False
        assert args.host is None

    def test_api_method_and_fields(self):
        args = build_parser().parse_args(
            ["-v", "--host", HOST, "api", "-X", "post", "projects", "-f", "name=x"]
        )
        assert args.verbose is True
        assert args.host == HOST
        assert args.method == "POST"
        assert args.field == ["name=x"]

    def test_invalid_method(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["api", "-X", "TRACE", "user"])

    def test_note_create(self):
        args = build_parser().parse_args(
            ["note", "create", "grp/repo", "7", "-m", "hi"]
        )
        assert args.project == "grp/repo"
        assert args.mr_iid == 7
        assert args.message == "hi"

    def test_note_requires_message(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["note", "create", "grp/repo", "7"])

    def test_config_set(self):
        args = build_parser().parse_args(
            ["config", "set", "sso_domain", "idp.example.com"]
        )
        assert args.config_command == "set"
        assert args.key == "sso_domain"
        assert args.value == "idp.example.com"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestParseFields:
    def test_types(self):
        assert _parse_fields(["name=demo", "id=3", "draft=true", "x=null"]) == {
            "name": "demo",
            "id": 3,
            "draft": True,
            "x": None,
        }

    def test_value_with_equals(self):
        assert _parse_fields(["q=a=b"]) == {"q": "a=b"}

    def test_missing_equals(self):
        with pytest.raises(ValueError, match="expected key=value"):
            _parse_fields(["name"])


# -------------------------------------------------------------------
# Config commands
# -------------------------------------------------------------------


class TestConfigCommands:
    def test_set_and_get(self, config_path, capsys):
        config = Config(config_path)
        cmd_config_set(config, "token", "abc", HOST)
        cmd_config_get(Config(config_path), "token", HOST)
        assert capsys.readouterr().out == "abc\n"

    def test_sso_domain_appends(self, config_path, capsys):
        config = Config(config_path)
        cmd_config_set(config, "sso_domain", "idp.example.com", HOST)
        cmd_config_set(config, "sso_domain", "sso.example.org", HOST)
        cmd_config_set(config, "sso_domain", "idp.example.com", HOST)

        assert "idp.example.com is already approved for gitlab.example.com" in (
            capsys.readouterr().out
        )
        saved = json.loads(config_path.read_text())
        assert saved["hosts"][HOST]["sso_domains"] == [
            "idp.example.com",
            "sso.example.org",
        ]

        cmd_config_get(Config(config_path), "sso_domain", HOST)
        assert capsys.readouterr().out == "idp.example.com\nsso.example.org\n"

    def test_get_missing_prints_nothing(self, config_path, capsys):
        cmd_config_get(Config(config_path), "token", HOST)
        assert capsys.readouterr().out == ""


# -------------------------------------------------------------------
# main()
# -------------------------------------------------------------------


class TestMain:
    """Test the synchronous entry point end to end."""

    def test_config_set_writes_file(self, config_path):
        main(["--host", HOST, "config", "set", "token", "abc"])
        saved = json.loads(config_path.read_text())
        assert saved["hosts"][HOST]["token"] == "abc"

    def test_api_prints_json(self, mock_api, monkeypatch, capsys):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        mock_api.get(f"{API}/user", payload={"id": 1, "username": "jdoe"})

        main(["--host", HOST, "api", "user"])

        out = capsys.readouterr().out
        assert json.loads(out) == {"id": 1, "username": "jdoe"}

    def test_api_post_fields(self, mock_api, monkeypatch, capsys):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        mock_api.post(f"{API}/projects", status=201, payload={"id": 2})

        main(["--host", HOST, "api", "-X", "POST", "projects", "-f", "name=demo"])

        assert json.loads(capsys.readouterr().out) == {"id": 2}

    def test_note_create(self, mock_api, monkeypatch, capsys):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        mock_api.post(
            f"{API}/projects/grp%2Frepo/merge_requests/7/notes",
            status=201,
            payload={"id": 99},
        )

        main(["--host", HOST, "note", "create", "grp/repo", "7", "-m", "LGTM"])

        assert capsys.readouterr().out == "Note #99 added to !7.\n"

    def test_missing_token_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--host", HOST, "api", "user"])

        assert exc_info.value.code == 1
        assert "Error: No API token configured" in capsys.readouterr().err

    def test_api_error_exits(self, mock_api, monkeypatch, capsys):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        mock_api.get(f"{API}/user", status=401, body='{"message":"401 Unauthorized"}')

        with pytest.raises(SystemExit) as exc_info:
            main(["--host", HOST, "api", "user"])

        assert exc_info.value.code == 1
        assert "Error: API error 401" in capsys.readouterr().err

    def test_unreachable_host_exits(self, mock_api, monkeypatch, capsys):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        mock_api.get(
            f"{API}/user",
            exception=aiohttp.ClientConnectionError("connection refused"),
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["--host", HOST, "api", "user"])

        assert exc_info.value.code == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Error: connection refused" in captured.err

    def test_bad_field_exits(self, capsys, monkeypatch):
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        with pytest.raises(SystemExit):
            main(["--host", HOST, "api", "-X", "POST", "projects", "-f", "oops"])
        assert "Error: invalid field 'oops'" in capsys.readouterr().err

    def test_sso_consent_needs_terminal(
        self, mock_api, monkeypatch, capsys, config_path, cookie_file
    ):
        _write_config(
            config_path,
            {
                "host": HOST,
                "hosts": {HOST: {"token": "t", "cookie_file": str(cookie_file)}},
            },
        )
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        mock_api.post(
            f"{API}/projects/1/merge_requests/2/notes",
            status=302,
            headers={"Location": "https://idp.example.com/saml/login"},
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["note", "create", "1", "2", "-m", "hi"])

        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "SSO redirect to idp.example.com requires consent" in err
        assert "stdin is not a terminal" in err

    def test_preapproved_sso_domain(
        self, mock_api, capsys, config_path, cookie_file
    ):
        notes = f"{API}/projects/1/merge_requests/2/notes"
        _write_config(
            config_path,
            {
                "host": HOST,
                "hosts": {
                    HOST: {
                        "token": "t",
                        "cookie_file": str(cookie_file),
                        "sso_domains": ["idp.example.com"],
                    }
                },
            },
        )
        mock_api.post(
            notes,
            status=302,
            headers={"Location": "https://idp.example.com/saml/login"},
        )
        mock_api.get("https://idp.example.com/saml/login", status=200)
        mock_api.post(notes, status=201, payload={"id": 5})

        main(["note", "create", "1", "2", "-m", "hi"])

        assert capsys.readouterr().out == "Note #5 added to !2.\n"
