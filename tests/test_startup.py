"""
Tests for process startup.
"""
import pytest
from grappa import should

import relaystat.api


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("OPENROUTER_API_KEY", "RELAYSTAT_CONFIG", "PORT", "STATS_DB_PATH", "LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    calls = []
    monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: calls.append(kwargs))
    return calls


def test_missing_credential_exits_before_binding(clean_env):
    with pytest.raises(SystemExit) as exc:
        relaystat.api.main()

    exc.value.code | should.equal(1)
    clean_env | should.be.empty


def test_main_serves_on_configured_port(clean_env, tmp_path, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    monkeypatch.setenv("PORT", "4555")
    monkeypatch.setenv("STATS_DB_PATH", str(tmp_path / "stats.db"))

    relaystat.api.main()

    clean_env | should.equal([{"host": "0.0.0.0", "port": 4555}])
