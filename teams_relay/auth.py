"""
teams_relay/auth.py — who holds the browser, and when a login is needed.

Strategy
--------
Every operation first asks for a credential of its audience. Credentials are
projections of the persisted browser snapshot (see tokens.py), so most calls
never touch a browser at all.

When nothing usable is stored, one login cycle runs:

    restore snapshot (unless stale) → open Teams → already signed in?
        yes → settle, re-open Teams, export + persist the snapshot
        no  → poll every AUTH_CHECK_INTERVAL s until the user finishes
              signing in in the visible window, or LOGIN_TIMEOUT_SECONDS

The browser is always closed at the end, whatever happened. Concurrent callers
of ensure_authenticated() share one in-flight login; a single asyncio.Lock
makes sure at most one browser exists.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Set, Union

from teams_relay import config
from teams_relay.browser import BrowserSession, close_quietly
from teams_relay.errors import AuthFailed, AuthRequired, LoginTimeout, TeamsRelayError
from teams_relay.models import Audience, SessionSnapshot
from teams_relay.storage import SessionStore
from teams_relay.token_cache import TokenCache
from teams_relay.tokens import (
    are_tokens_expired,
    extract_chat_token,
    extract_favourites_credential,
    extract_message_auth,
    extract_user_identity,
    get_search_token_status,
)

log = logging.getLogger("teams_relay.auth")

LOGIN_URL_HOSTS = (
    "login.microsoftonline.com",
    "login.live.com",
    "login.microsoft.com",
)

# Any of these on a teams.microsoft.com page means the app shell has loaded
AUTHENTICATED_SELECTORS = [
    '[data-tid="app-bar"]',
    '[data-tid="search-box"]',
    'input[placeholder*="Search"]',
    '[data-tid="chat-list"]',
    '[data-tid="team-list"]',
]

BrowserFactory = Callable[[bool, Optional[SessionSnapshot]], Awaitable[BrowserSession]]


class AuthState(str, Enum):
    IDLE                  = "idle"
    BROWSER_STARTING      = "browser_starting"
    AWAITING_MANUAL_LOGIN = "awaiting_manual_login"
    AUTHENTICATED         = "authenticated"


def is_login_url(url: str) -> bool:
    return any(host in url for host in LOGIN_URL_HOSTS)


class AuthOrchestrator:
    """Owns the browser and the login state machine for one user session."""

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[TokenCache] = None,
        *,
        browser_factory: BrowserFactory = BrowserSession.launch,
        login_timeout: float = config.LOGIN_TIMEOUT_SECONDS,
        poll_interval: float = config.AUTH_CHECK_INTERVAL,
        navigation_delay: float = config.NAVIGATION_SETTLE_DELAY,
        settle_delay: float = config.TOKEN_SETTLE_DELAY,
        login_email: str = config.LOGIN_EMAIL,
    ) -> None:
        self.store = store
        self.cache = cache or TokenCache(store)
        self.state = AuthState.IDLE

        self._browser_factory  = browser_factory
        self._login_timeout    = login_timeout
        self._poll_interval    = poll_interval
        self._navigation_delay = navigation_delay
        self._settle_delay     = settle_delay
        self._login_email      = login_email

        self._browser_lock = asyncio.Lock()
        self._login_task: Optional[asyncio.Task] = None
        self._rejected: Set[Audience] = set()

    # ─── Credentials ──────────────────────────────────────────────────────────

    def snapshot(self) -> Optional[SessionSnapshot]:
        return self.store.read_session()

    def _find_credential(self, audience: Audience, snapshot: Optional[SessionSnapshot]):
        if audience is Audience.SEARCH:
            return self.cache.get_valid_search_credential()
        if audience in (Audience.CHAT, Audience.PRESENCE):
            return extract_chat_token(snapshot)
        if audience is Audience.MESSAGING:
            return extract_message_auth(snapshot)
        return extract_favourites_credential(snapshot)

    def get_credential(self, audience: Union[Audience, str]):
        """
        The credential bundle for `audience`, or AuthRequired.

        Search goes through the token cache; the other audiences are derived
        fresh from the stored snapshot on every call.
        """
        audience = Audience(audience)
        snapshot = None if audience is Audience.SEARCH else self.snapshot()
        credential = self._find_credential(audience, snapshot)
        if credential is None:
            raise AuthRequired(audience.value)
        return credential

    def has_usable_session(self, audience: Union[Audience, str, None] = None) -> bool:
        """
        True when the stored session is fresh and yields a credential for
        `audience` (every audience when None) that no server has rejected yet.
        """
        if self.store.is_session_stale():
            return False
        audiences = list(Audience) if audience is None else [Audience(audience)]
        if any(a in self._rejected for a in audiences):
            return False
        snapshot = self.snapshot()
        return all(self._find_credential(a, snapshot) is not None for a in audiences)

    def invalidate(self, audience: Union[Audience, str]) -> None:
        """Mark `audience` as rejected; the next ensure_authenticated() logs in again."""
        audience = Audience(audience)
        self._rejected.add(audience)
        if audience is Audience.SEARCH:
            self.cache.invalidate()
        log.debug("%s credential marked as rejected", audience.value)

    # ─── Login ────────────────────────────────────────────────────────────────

    async def ensure_authenticated(
        self,
        refresh: bool = False,
        audience: Union[Audience, str, None] = None,
    ) -> None:
        """
        Make sure a usable session is stored, running a browser login if not.

        With `audience`, only that credential has to be present; otherwise all
        of them. Callers arriving while a login is already running wait for
        that same login instead of starting another one. If the login finishes
        and the requested audience is still missing, AuthRequired is raised.
        """
        in_flight = self._login_task is not None and not self._login_task.done()
        if not refresh and not in_flight and self.has_usable_session(audience):
            return
        if not in_flight:
            self._login_task = asyncio.ensure_future(self._login_cycle(fresh=False))
        await asyncio.shield(self._login_task)

        if audience is not None:
            self.get_credential(audience)

    async def force_new_login(self) -> None:
        """Throw the stored session away and sign in from scratch."""
        if self._login_task is not None and not self._login_task.done():
            await asyncio.wait({self._login_task})
        self._login_task = asyncio.ensure_future(self._login_cycle(fresh=True))
        await asyncio.shield(self._login_task)

    def logout(self) -> None:
        self.store.clear_all()
        self._rejected.clear()
        log.info("Stored session and token cache removed.")

    async def _login_cycle(self, fresh: bool) -> None:
        async with self._browser_lock:
            session: Optional[BrowserSession] = None
            self.state = AuthState.BROWSER_STARTING
            try:
                if fresh:
                    self.store.clear_all()
                    snapshot = None
                else:
                    snapshot = self._restorable_snapshot()
                self.store.ensure_user_data_dir()

                session = await self._browser_factory(False, snapshot)
                if fresh:
                    await session.clear_cookies()

                await self._wait_for_login(session)
                await self._capture(session)
                log.info("Login complete — session saved.")
            except TeamsRelayError:
                raise
            except Exception as exc:
                log.error("Browser login failed: %s", exc)
                raise AuthFailed(f"Browser login failed: {exc}") from exc
            finally:
                await close_quietly(session)
                self.state = AuthState.IDLE

    def _restorable_snapshot(self) -> Optional[SessionSnapshot]:
        if self.store.is_session_stale():
            if self.store.has_session():
                log.info("Saved session is older than %.0fh — not restoring it.", self.store.stale_after_hours)
            return None
        snapshot = self.snapshot()
        if snapshot is not None and are_tokens_expired(snapshot):
            log.info("Restored session has no live search token; Teams will mint new ones.")
        return snapshot

    async def _is_authenticated(self, session: BrowserSession) -> bool:
        url = session.current_url()
        if is_login_url(url) or config.TEAMS_DOMAIN not in url:
            return False
        return await session.has_any_of(AUTHENTICATED_SELECTORS)

    async def _wait_for_login(self, session: BrowserSession) -> None:
        """Open Teams and return once the app shell is up, or raise LoginTimeout."""
        log.info("Navigating to Teams…")
        await session.goto(config.TEAMS_URL)
        await asyncio.sleep(self._navigation_delay)

        if await self._is_authenticated(session):
            self.state = AuthState.AUTHENTICATED
            return

        self.state = AuthState.AWAITING_MANUAL_LOGIN
        if self._login_email and is_login_url(session.current_url()):
            await session.prefill_email(self._login_email)
        log.info("Waiting for sign-in in the browser window (up to %.0fs for MFA)…", self._login_timeout)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._login_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self._poll_interval)
            if await self._is_authenticated(session):
                self.state = AuthState.AUTHENTICATED
                return

        raise LoginTimeout(f"Sign-in was not completed within {self._login_timeout:.0f} seconds.")

    async def _capture(self, session: BrowserSession) -> None:
        """Let MSAL finish minting tokens, then persist the snapshot."""
        await asyncio.sleep(self._settle_delay)
        await session.goto(config.TEAMS_URL)
        await asyncio.sleep(self._navigation_delay)
        self._persist(await session.export_snapshot())

    def _persist(self, snapshot: SessionSnapshot) -> None:
        self.store.write_session(snapshot)
        self.cache.invalidate()
        self._rejected.clear()

    # ─── Browser hand-off for dispatch ────────────────────────────────────────

    @asynccontextmanager
    async def browser_session(self, headless: bool = config.HEADLESS_SEARCH) -> AsyncIterator[BrowserSession]:
        """
        Lend a signed-in browser to one operation.

        Headless sessions cannot wait for a manual sign-in, so an unauthenticated
        headless browser raises AuthRequired straight away. On a clean exit the
        refreshed snapshot is persisted; the browser is closed either way.
        """
        async with self._browser_lock:
            session: Optional[BrowserSession] = None
            self.state = AuthState.BROWSER_STARTING
            try:
                try:
                    session = await self._browser_factory(headless, self._restorable_snapshot())
                    await session.goto(config.TEAMS_URL)
                    await asyncio.sleep(self._navigation_delay)
                    if await self._is_authenticated(session):
                        self.state = AuthState.AUTHENTICATED
                    elif headless:
                        raise AuthRequired(Audience.SEARCH.value, "The saved browser session is not signed in.")
                    else:
                        await self._wait_for_login(session)
                except TeamsRelayError:
                    raise
                except Exception as exc:
                    log.error("Could not start the browser: %s", exc)
                    raise AuthFailed(f"Could not start the browser: {exc}") from exc

                yield session

                # Tokens minted by the operation land in localStorage a moment later
                await asyncio.sleep(self._settle_delay)
                self._persist(await session.export_snapshot())
            finally:
                await close_quietly(session)
                self.state = AuthState.IDLE

    # ─── Diagnostics ──────────────────────────────────────────────────────────

    def status(self) -> dict:
        snapshot = self.snapshot()
        age = self.store.session_age_hours()
        identity = extract_user_identity(snapshot)

        audiences = {}
        for audience in Audience:
            audiences[audience.value] = self._find_credential(audience, snapshot) is not None

        return {
            "state": self.state.value,
            "session": {
                "exists":    age is not None,
                "age_hours": round(age, 2) if age is not None else None,
                "stale":     self.store.is_session_stale(),
            },
            "search_token": get_search_token_status(snapshot),
            "audiences":    audiences,
            "user":         identity.display_name if identity else None,
        }
