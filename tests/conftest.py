import pytest

from ideaforge import auth, billing, cache, counter, llm_client, ratelimit


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    # Keep every test offline and away from the working tree's cache/
    monkeypatch.setattr(cache, "CACHE_DIR", tmp_path / "results")
    monkeypatch.setattr(counter, "COUNTER_FILE", tmp_path / "counter.json")
    monkeypatch.setenv("ANALYSES_FILE", str(tmp_path / "analyses.json"))
    monkeypatch.setattr(auth, "SUPABASE_URL", "")
    monkeypatch.setattr(auth, "SUPABASE_ANON_KEY", "")
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "")
    ratelimit._reset()
    llm_client._reset_backoff()
    yield
    ratelimit._reset()
    llm_client._reset_backoff()


@pytest.fixture
def user():
    return {"id": "user-123", "email": "founder@example.com", "user_metadata": {"full_name": "Ada Founder"}}
