"""
tests/test_token_cache.py — search-token cache policy.

Test matrix:
  1. cache miss → extract, persist, return
  2. cache hit before expiry → same token, extractor not called again
  3. cached token past expiry → re-extracted
  4. nothing extractable → None, nothing written
  5. invalidate() → next call extracts again; safe when already empty
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

from factories import NOW, SEARCH_TARGET, make_jwt, make_snapshot, token_entry
from teams_relay.models import CachedToken, SearchCredential
from teams_relay.storage import SessionStore
from teams_relay.token_cache import TokenCache
from teams_relay.tokens import extract_search_token


def _cache(store: SessionStore, now: float = NOW, extractor=None) -> TokenCache:
    return TokenCache(store, extractor=extractor or extract_search_token, clock=lambda: now)


def _store_with_token(store: SessionStore, exp: float) -> str:
    token = make_jwt(exp=exp)
    store.write_session(make_snapshot([token_entry(SEARCH_TARGET, token)]))
    return token


def test_miss_extracts_and_persists(store: SessionStore):
    token = _store_with_token(store, NOW + 3600)

    credential = _cache(store).get_valid_search_credential()

    assert credential.token == token
    cached = store.read_token_cache()
    assert cached.token == token
    assert cached.expires_at_ms == int((NOW + 3600) * 1000)
    assert cached.extracted_at_ms == int(NOW * 1000)


def test_hit_returns_same_token_without_extracting(store: SessionStore):
    token = _store_with_token(store, NOW + 3600)
    extractor = MagicMock(wraps=extract_search_token)
    cache = _cache(store, extractor=extractor)

    first = cache.get_valid_search_token()
    second = cache.get_valid_search_token()

    assert first == second == token
    assert extractor.call_count == 1


def test_expired_cache_entry_is_not_used(store: SessionStore):
    store.write_token_cache(CachedToken(
        token="stale", expires_at_ms=int((NOW - 1) * 1000), extracted_at_ms=int((NOW - 3600) * 1000),
    ))
    fresh = _store_with_token(store, NOW + 600)

    assert _cache(store).get_valid_search_token() == fresh


def test_nothing_to_extract(store: SessionStore):
    assert _cache(store).get_valid_search_token() is None
    assert store.read_token_cache() is None


def test_already_expired_extraction_is_not_cached(store: SessionStore):
    expired = SearchCredential(token="old", expiry=datetime.fromtimestamp(NOW - 5, tz=timezone.utc))
    cache = _cache(store, extractor=lambda snapshot, now: expired)

    assert cache.get_valid_search_credential() is None
    assert store.read_token_cache() is None


def test_invalidate_forces_re_extraction(store: SessionStore):
    _store_with_token(store, NOW + 3600)
    extractor = MagicMock(wraps=extract_search_token)
    cache = _cache(store, extractor=extractor)

    cache.get_valid_search_token()
    cache.invalidate()
    cache.invalidate()
    cache.get_valid_search_token()

    assert extractor.call_count == 2
