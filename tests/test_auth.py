"""
tests/test_auth.py — AuthOrchestrator login state machine.

The Playwright browser is replaced by FakeBrowser: a scripted sequence of
URLs plus AsyncMocks for every page action, so the tests cover the state
machine without launching Chromium.

Test matrix:
  1. usable session          → no browser at all
  2. restored session works  → browser opened, snapshot re-exported, browser closed
  3. manual login            → polls until the app shell appears
  4. login never finishes    → LoginTimeout, browser still closed
  5. browser blows up        → AuthFailed, browser still closed
  6. concurrent callers      → exactly one browser launch
  7. 12.5h-old session       → not restored into the browser
  8. forced login            → store wiped, cookies cleared, nothing restored
  9. browser_session()       → headless + signed out fails fast; success persists
 10. per-audience readiness → a missing or rejected credential triggers one login
 11. borrowed browser       → export waits for tokens minted during the operation
"""
import asyncio
import logging
import os
import time
from typing import List, Optional
from unittest.mock import AsyncMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError

from factories import SEARCH_TARGET, USER_OID, live_snapshot, make_jwt, make_snapshot, token_entry
from teams_relay.auth import AuthOrchestrator, AuthState
from teams_relay.errors import AuthFailed, AuthRequired, LoginTimeout
from teams_relay.models import Audience, CachedToken, SessionSnapshot
from teams_relay.storage import SESSION_STATE_FILE, SessionStore

TEAMS    = "https://teams.microsoft.com/v2/"
SIGN_IN  = "https://login.microsoftonline.com/common/oauth2/authorize"


class FakeBrowser:
    """Walks through `urls` one step per current_url() call, then stays on the last."""

    def __init__(self, urls: List[str], snapshot: Optional[SessionSnapshot] = None) -> None:
        self._urls = list(urls)
        self._url  = urls[0]
        self.goto            = AsyncMock()
        self.has_any_of      = AsyncMock(side_effect=lambda selectors: "teams.microsoft.com" in self._url)
        self.export_snapshot = AsyncMock(return_value=snapshot or live_snapshot())
        self.clear_cookies   = AsyncMock()
        self.prefill_email   = AsyncMock(return_value=True)
        self.search          = AsyncMock(return_value={})
        self.close           = AsyncMock()

    def current_url(self) -> str:
        self._url = self._urls[0]
        if len(self._urls) > 1:
            self._urls.pop(0)
        return self._url


class Factory:
    def __init__(self, browser: FakeBrowser, error: Optional[Exception] = None) -> None:
        self.browser = browser
        self.error = error
        self.calls: list = []

    async def __call__(self, headless: bool, snapshot: Optional[SessionSnapshot]) -> FakeBrowser:
        self.calls.append((headless, snapshot))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.browser


def _orchestrator(store: SessionStore, factory: Factory, **kwargs) -> AuthOrchestrator:
    options = dict(
        browser_factory=factory,
        login_timeout=0.2,
        poll_interval=0.01,
        navigation_delay=0,
        settle_delay=0,
        login_email="",
    )
    options.update(kwargs)
    return AuthOrchestrator(store, **options)


# ── Test 1: usable session, no browser ────────────────────────────────────────

@pytest.mark.asyncio
async def test_usable_session_skips_browser(store: SessionStore):
    store.write_session(live_snapshot())
    factory = Factory(FakeBrowser([TEAMS]))

    await _orchestrator(store, factory).ensure_authenticated()

    assert factory.calls == []


# ── Test 2: restored session still signed in ──────────────────────────────────

@pytest.mark.asyncio
async def test_restored_session_is_reexported(store: SessionStore):
    stored = live_snapshot(search=False)
    store.write_session(stored)
    store.write_token_cache(CachedToken(token="old", expires_at_ms=1, extracted_at_ms=0))
    browser = FakeBrowser([TEAMS])
    factory = Factory(browser)
    auth = _orchestrator(store, factory)

    await auth.ensure_authenticated()

    headless, restored = factory.calls[0]
    assert headless is False
    assert restored == stored
    browser.export_snapshot.assert_awaited()
    browser.close.assert_awaited_once()
    assert store.read_token_cache() is None
    assert auth.get_credential(Audience.SEARCH).token
    assert auth.state is AuthState.IDLE


# ── Test 3: manual login ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_waits_for_manual_login(store: SessionStore):
    browser = FakeBrowser([SIGN_IN, SIGN_IN, SIGN_IN, TEAMS])
    auth = _orchestrator(store, Factory(browser), login_email="ada@example.com")

    await auth.ensure_authenticated()

    browser.prefill_email.assert_awaited_once_with("ada@example.com")
    browser.close.assert_awaited_once()
    assert store.has_session()
    assert auth.has_usable_session()


# ── Test 4: timeout ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_timeout_closes_browser(store: SessionStore):
    browser = FakeBrowser([SIGN_IN])
    auth = _orchestrator(store, Factory(browser), login_timeout=0.05)

    with pytest.raises(LoginTimeout):
        await auth.ensure_authenticated()

    browser.close.assert_awaited_once()
    browser.export_snapshot.assert_not_awaited()
    assert not store.has_session()
    assert auth.state is AuthState.IDLE


# ── Test 5: browser failures ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_navigation_error_becomes_auth_failed(store: SessionStore):
    browser = FakeBrowser([TEAMS])
    browser.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
    auth = _orchestrator(store, Factory(browser))

    with pytest.raises(AuthFailed):
        await auth.ensure_authenticated()

    browser.close.assert_awaited_once()
    assert auth.state is AuthState.IDLE


@pytest.mark.asyncio
async def test_launch_error_becomes_auth_failed(store: SessionStore):
    factory = Factory(FakeBrowser([TEAMS]), error=PlaywrightError("Executable doesn't exist"))

    with pytest.raises(AuthFailed):
        await _orchestrator(store, factory).ensure_authenticated()


# ── Test 6: concurrent callers share one login ────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_callers_share_one_login(store: SessionStore):
    factory = Factory(FakeBrowser([SIGN_IN, SIGN_IN, TEAMS]))
    auth = _orchestrator(store, factory)

    await asyncio.gather(*(auth.ensure_authenticated() for _ in range(5)))

    assert len(factory.calls) == 1


@pytest.mark.asyncio
async def test_refresh_runs_login_even_with_usable_session(store: SessionStore):
    store.write_session(live_snapshot())
    factory = Factory(FakeBrowser([TEAMS]))

    await _orchestrator(store, factory).ensure_authenticated(refresh=True)

    assert len(factory.calls) == 1


# ── Test 7: stale session ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stale_session_is_not_restored(store: SessionStore):
    store.write_session(live_snapshot())
    old = time.time() - 12.5 * 3600
    os.utime(store.data_dir / SESSION_STATE_FILE, (old, old))
    factory = Factory(FakeBrowser([TEAMS]))
    auth = _orchestrator(store, factory)

    assert not auth.has_usable_session()
    await auth.ensure_authenticated()

    assert factory.calls == [(False, None)]
    assert not store.is_session_stale()


# ── Test 8: forced login ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_force_new_login_starts_from_scratch(store: SessionStore):
    store.write_session(live_snapshot())
    browser = FakeBrowser([SIGN_IN, TEAMS])
    factory = Factory(browser)

    await _orchestrator(store, factory).force_new_login()

    assert factory.calls == [(False, None)]
    browser.clear_cookies.assert_awaited_once()
    browser.close.assert_awaited_once()
    assert store.has_session()


# ── Test 9: browser_session ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_headless_browser_session_requires_login(store: SessionStore):
    browser = FakeBrowser([SIGN_IN])
    auth = _orchestrator(store, Factory(browser))

    with pytest.raises(AuthRequired):
        async with auth.browser_session(headless=True):
            pass

    browser.close.assert_awaited_once()
    assert auth.state is AuthState.IDLE


@pytest.mark.asyncio
async def test_browser_session_persists_on_exit(store: SessionStore):
    browser = FakeBrowser([TEAMS])
    auth = _orchestrator(store, Factory(browser))

    async with auth.browser_session(headless=True) as session:
        assert session is browser
        assert auth.state is AuthState.AUTHENTICATED

    assert store.read_session() == browser.export_snapshot.return_value
    browser.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_browser_session_closes_on_error(store: SessionStore):
    browser = FakeBrowser([TEAMS])
    auth = _orchestrator(store, Factory(browser))

    with pytest.raises(RuntimeError):
        async with auth.browser_session(headless=True):
            raise RuntimeError("boom")

    browser.export_snapshot.assert_not_awaited()
    browser.close.assert_awaited_once()


# ── Credentials / diagnostics ─────────────────────────────────────────────────

@pytest.mark.parametrize("audience", list(Audience))
def test_get_credential_requires_session(store: SessionStore, audience: Audience):
    auth = _orchestrator(store, Factory(FakeBrowser([TEAMS])))
    with pytest.raises(AuthRequired) as exc_info:
        auth.get_credential(audience)
    assert exc_info.value.audience == audience.value


def test_presence_uses_chat_bearer(store: SessionStore):
    store.write_session(live_snapshot())
    auth = _orchestrator(store, Factory(FakeBrowser([TEAMS])))
    assert auth.get_credential("presence") == auth.get_credential("chat")


def test_invalidate_search_drops_cache(store: SessionStore):
    store.write_session(live_snapshot())
    auth = _orchestrator(store, Factory(FakeBrowser([TEAMS])))
    auth.get_credential(Audience.SEARCH)
    assert store.read_token_cache() is not None

    auth.invalidate(Audience.SEARCH)
    auth.invalidate(Audience.MESSAGING)

    assert store.read_token_cache() is None


def test_status(store: SessionStore):
    store.write_session(live_snapshot())
    status = _orchestrator(store, Factory(FakeBrowser([TEAMS]))).status()

    assert status["state"] == "idle"
    assert status["session"]["exists"] is True
    assert status["session"]["stale"] is False
    assert status["search_token"]["has_token"] is True
    assert status["audiences"] == {a.value: True for a in Audience}
    assert status["user"] == "Ada Lovelace"


# ── Test 10: per-audience readiness ───────────────────────────────────────────

def _search_only_snapshot() -> SessionSnapshot:
    """A live search token but no skype cookies: messaging and favourites are unusable."""
    exp = time.time() + 3600
    return make_snapshot([token_entry(SEARCH_TARGET, make_jwt(exp=exp, oid=USER_OID))])


@pytest.mark.asyncio
async def test_missing_messaging_credential_triggers_login(store: SessionStore):
    store.write_session(_search_only_snapshot())
    factory = Factory(FakeBrowser([TEAMS]))
    auth = _orchestrator(store, factory)

    with pytest.raises(AuthRequired):
        auth.get_credential("messaging")
    assert auth.has_usable_session(Audience.SEARCH)
    assert not auth.has_usable_session()

    await auth.ensure_authenticated()

    assert len(factory.calls) == 1
    assert auth.get_credential("messaging").skype_token


@pytest.mark.asyncio
async def test_audience_scoped_ensure_ignores_other_audiences(store: SessionStore):
    store.write_session(_search_only_snapshot())
    factory = Factory(FakeBrowser([TEAMS]))

    await _orchestrator(store, factory).ensure_authenticated(audience=Audience.SEARCH)

    assert factory.calls == []


@pytest.mark.asyncio
async def test_audience_still_missing_after_login(store: SessionStore):
    browser = FakeBrowser([TEAMS], snapshot=_search_only_snapshot())
    auth = _orchestrator(store, Factory(browser))

    with pytest.raises(AuthRequired) as exc_info:
        await auth.ensure_authenticated(audience="messaging")

    assert exc_info.value.audience == "messaging"
    browser.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_rejected_audience_forces_one_relogin(store: SessionStore):
    store.write_session(live_snapshot())
    factory = Factory(FakeBrowser([TEAMS]))
    auth = _orchestrator(store, factory)

    auth.invalidate(Audience.CHAT)
    assert not auth.has_usable_session()

    await auth.ensure_authenticated()
    await auth.ensure_authenticated()

    assert len(factory.calls) == 1
    assert auth.has_usable_session(Audience.CHAT)


def test_logout_forgets_rejections(store: SessionStore):
    store.write_session(live_snapshot())
    auth = _orchestrator(store, Factory(FakeBrowser([TEAMS])))
    auth.invalidate(Audience.FAVOURITES)

    auth.logout()
    store.write_session(live_snapshot())

    assert auth.has_usable_session()


def test_restoring_session_without_search_token_is_logged(store: SessionStore, caplog):
    store.write_session(live_snapshot(search=False))
    auth = _orchestrator(store, Factory(FakeBrowser([TEAMS])))

    with caplog.at_level(logging.INFO, logger="teams_relay.auth"):
        assert auth._restorable_snapshot() is not None

    assert "no live search token" in caplog.text


# ── Test 11: tokens minted during a borrowed browser are kept ─────────────────

@pytest.mark.asyncio
async def test_browser_session_waits_for_tokens_before_export(store: SessionStore):
    settled: list = []
    real_sleep = asyncio.sleep

    async def sleep(delay):
        if delay == 0.5:
            settled.append(delay)
        await real_sleep(0)

    browser = FakeBrowser([TEAMS])
    browser.export_snapshot = AsyncMock(side_effect=lambda: live_snapshot(search=bool(settled)))
    auth = _orchestrator(store, Factory(browser), settle_delay=0.5)

    with patch("teams_relay.auth.asyncio.sleep", new=sleep):
        async with auth.browser_session(headless=True):
            assert settled == []

    assert settled == [0.5]
    assert auth.get_credential(Audience.SEARCH).token
