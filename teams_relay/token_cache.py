"""
teams_relay/token_cache.py — "is there a usable search token right now?"

The search token is the credential we need most often, so a validated copy is
kept in token-cache.json. Validity is decided by the token's own expiry claim
(expires_at_ms) and nothing else; extracted_at_ms is kept for diagnostics.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from teams_relay.models import CachedToken, SearchCredential, SessionSnapshot
from teams_relay.storage import SessionStore
from teams_relay.tokens import extract_search_token

log = logging.getLogger("teams_relay.token_cache")


class TokenCache:

    def __init__(
        self,
        store: SessionStore,
        *,
        extractor: Callable[..., Optional[SearchCredential]] = extract_search_token,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._extract = extractor
        self._clock = clock

    def get_valid_search_credential(self) -> Optional[SearchCredential]:
        now_ms = int(self._clock() * 1000)

        cached = self._store.read_token_cache()
        if cached is not None and cached.expires_at_ms > now_ms:
            return SearchCredential(token=cached.token, expiry=_from_ms(cached.expires_at_ms))

        snapshot: Optional[SessionSnapshot] = self._store.read_session()
        extracted = self._extract(snapshot, now_ms / 1000)
        if extracted is None:
            return None

        expires_at_ms = int(extracted.expiry.timestamp() * 1000)
        if expires_at_ms <= now_ms:
            return None

        self._store.write_token_cache(CachedToken(
            token=extracted.token,
            expires_at_ms=expires_at_ms,
            extracted_at_ms=now_ms,
        ))
        log.debug("Cached search token (expires in %d min)", (expires_at_ms - now_ms) // 60_000)
        return extracted

    def get_valid_search_token(self) -> Optional[str]:
        credential = self.get_valid_search_credential()
        return credential.token if credential else None

    def invalidate(self) -> None:
        self._store.clear_token_cache()
        log.debug("Search token cache invalidated")


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
