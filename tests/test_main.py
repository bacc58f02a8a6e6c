import os

import pytest

import connectpipe.main as cli
from connectpipe.config import load_config_from_env
from connectpipe.credentials import file_credentials, load_credential
from connectpipe.errors import ConfigurationError, HandshakeRejected
from connectpipe.relay import RelayReport


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    env = {k: v for k, v in os.environ.items() if not k.startswith("CONNECTPIPE_")}
    monkeypatch.setattr(os, "environ", env)
    return env


@pytest.mark.parametrize("argv", [
    [],
    ["proxy"],
    ["proxy", "3128", "host"],
    ["a", "1", "b", "2", "auth", "extra"],
    ["-x", "a", "1", "b", "2"],
    ["a", "1", "b", "2", "--bogus"],
])
def test_wrong_argument_count_prints_usage(argv, capsys, monkeypatch):
    called = []
    monkeypatch.setattr(cli, "run_tunnel", lambda *a, **k: called.append(a))
    assert cli.main(argv) == 0
    out = capsys.readouterr().out
    assert "usage: connectpipe <proxyhost> <proxyport> <desthost> <destport> [authfile]" in out
    assert called == []


@pytest.mark.parametrize("argv", [["proxy", "99999", "host", "22"], ["proxy", "3128", "host", "ssh"]])
def test_bad_port_is_a_configuration_error(argv, capsys):
    assert cli.main(argv) == ConfigurationError.exit_code
    assert "invalid" in capsys.readouterr().err


def test_success_with_summary(capsys, monkeypatch, isolated_env):
    seen = {}

    async def fake_run_tunnel(cfg):
        seen["cfg"] = cfg
        return RelayReport(remote_to_local=2048, local_to_remote=10, leftover=5, duration=1.2)

    monkeypatch.setattr(cli, "run_tunnel", fake_run_tunnel)
    assert cli.main(["--summary", "--half-close", "proxy.local", "3128", "ssh.example.org", "22", "/tmp/auth"]) == 0
    cfg = seen["cfg"]
    assert (cfg.proxy_host, cfg.proxy_port, cfg.dest_host, cfg.dest_port) == ("proxy.local", 3128, "ssh.example.org", 22)
    assert cfg.auth_file == "/tmp/auth"
    assert cfg.half_close and cfg.summary
    err = capsys.readouterr().err
    assert "ssh.example.org:22" in err
    assert "2.0KB" in err
    assert isolated_env["CONNECTPIPE_PROXY_PORT"] == "3128"


def test_handshake_failure_exits_nonzero(capsys, monkeypatch):
    async def fake_run_tunnel(cfg):
        raise HandshakeRejected(cfg.dest_host, cfg.dest_port, 502)

    monkeypatch.setattr(cli, "run_tunnel", fake_run_tunnel)
    assert cli.main(["proxy.local", "3128", "ssh.example.org", "22"]) == 1
    assert "proxy could not open connection to ssh.example.org:22" in capsys.readouterr().err


def test_env_supplies_defaults_and_flags(isolated_env):
    isolated_env.update({
        "CONNECTPIPE_PROXY_HOST": "p",
        "CONNECTPIPE_PROXY_PORT": "8080",
        "CONNECTPIPE_DEST_HOST": "d",
        "CONNECTPIPE_DEST_PORT": "443",
        "CONNECTPIPE_HALF_CLOSE": "yes",
        "CONNECTPIPE_LOG_LEVEL": "debug",
    })
    cfg = load_config_from_env()
    assert cfg.proxy_port == 8080 and cfg.dest_port == 443
    assert cfg.half_close is True
    assert cfg.summary is False
    assert cfg.auth_file is None
    assert cfg.log_level == "DEBUG"


def test_env_missing_value(isolated_env):
    isolated_env.update({"CONNECTPIPE_PROXY_HOST": "p", "CONNECTPIPE_PROXY_PORT": "8080"})
    with pytest.raises(ConfigurationError):
        load_config_from_env()


def test_file_credentials(tmp_path):
    path = tmp_path / "auth"
    path.write_bytes(b"dXNlcjpwYXNz\n")
    assert load_credential(file_credentials(str(path))) == b"dXNlcjpwYXNz\n"
    assert load_credential(None) is None
    with pytest.raises(ConfigurationError):
        file_credentials(str(tmp_path / "missing"))()
