import pytest

from teams_relay.storage import SessionStore


@pytest.fixture
def store(tmp_path, monkeypatch) -> SessionStore:
    """A SessionStore in a temp dir with its own freshly generated key."""
    monkeypatch.delenv("TEAMS_RELAY_KEY", raising=False)
    return SessionStore(tmp_path / "data")
