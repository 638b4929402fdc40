"""
Unit tests for the web_server launcher.
"""

import uvicorn

import web_server


class TestParseArguments:

    def test_defaults(self):
        args = web_server.parse_arguments([])
        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.reload is False

    def test_overrides(self):
        args = web_server.parse_arguments(["--host", "0.0.0.0", "--port", "8080", "--reload"])
        assert args.host == "0.0.0.0"
        assert args.port == 8080
        assert args.reload is True


class TestMain:

    def test_starts_uvicorn_with_app(self, monkeypatch):
        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.setattr(web_server, "load_env_file", lambda: None)

        web_server.main(["--port", "9000"])

        [(app, kwargs)] = calls
        assert app == "backend.src.main:app"
        assert kwargs["port"] == 9000
        assert kwargs["reload"] is False

    def test_warns_in_no_signer_mode(self, monkeypatch, capsys):
        monkeypatch.delenv("ESCROW_SERVICE_URL", raising=False)

        web_server.warn_no_signer()

        assert "ESCROW_SERVICE_URL is not set" in capsys.readouterr().err
