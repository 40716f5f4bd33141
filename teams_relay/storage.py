"""
teams_relay/storage.py — encrypted local persistence for the session.

Two documents live in the data directory:
  - session-state.json : the browser snapshot (cookies + localStorage)
  - token-cache.json   : the cached search token

Both are written as AES-GCM envelopes (see crypto.py) with 0600 permissions,
through a temp-file-then-rename so a concurrent reader never sees half a file.

Failure policy
--------------
Nothing in here raises on a bad file. Missing, corrupt, or sealed with another
machine's key all read back as None (logged), because the caller can always
recover by asking the user to log in again. A plaintext JSON file from an
older install is returned as-is and immediately re-written encrypted.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from teams_relay import config
from teams_relay.crypto import Cipher, DecryptionError, cipher_for, is_encrypted, seal_json
from teams_relay.errors import SessionUnreadable
from teams_relay.models import CachedToken, SessionSnapshot
from teams_relay.utils import atomic_write_bytes, ensure_private_dir, get_data_dir

log = logging.getLogger("teams_relay.storage")

SESSION_STATE_FILE = "session-state.json"
TOKEN_CACHE_FILE   = "token-cache.json"
USER_DATA_DIR_NAME = ".user-data"


class SecureDocument:
    """One encrypted JSON document on disk."""

    def __init__(self, path: Path, cipher: Cipher) -> None:
        self.path = path
        self._cipher = cipher

    def write(self, document: Any) -> bool:
        """Encrypt and persist. Returns False (logged) if the disk write fails."""
        try:
            atomic_write_bytes(self.path, seal_json(self._cipher, document))
        except OSError as exc:
            log.error("Could not write %s: %s", self.path.name, exc)
            return False
        log.debug("Wrote %s", self.path.name)
        return True

    def read(self) -> Optional[Any]:
        if not self.path.exists():
            return None
        try:
            return self._read()
        except SessionUnreadable as exc:
            log.warning("Could not read %s: %s", self.path.name, exc)
            return None

    def _read(self) -> Any:
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SessionUnreadable(f"unparseable file ({exc})") from exc

        if is_encrypted(parsed):
            try:
                return json.loads(self._cipher.decrypt(parsed))
            except (DecryptionError, json.JSONDecodeError) as exc:
                raise SessionUnreadable(f"decryption failed ({exc})") from exc

        # Legacy plaintext, migrate in place
        log.info("Migrating plaintext %s to encrypted storage", self.path.name)
        self.write(parsed)
        return parsed

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.exists()

    def age_hours(self) -> Optional[float]:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return (time.time() - mtime) / 3600


class SessionStore:
    """
    The session snapshot, the token cache, and the browser profile directory,
    all under one data directory.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        *,
        cipher: Optional[Cipher] = None,
        stale_after_hours: float = config.SESSION_EXPIRY_HOURS,
    ) -> None:
        self.data_dir = ensure_private_dir(Path(data_dir)) if data_dir else get_data_dir()
        cipher = cipher or cipher_for(self.data_dir)
        self.session     = SecureDocument(self.data_dir / SESSION_STATE_FILE, cipher)
        self.token_cache = SecureDocument(self.data_dir / TOKEN_CACHE_FILE, cipher)
        self.stale_after_hours = stale_after_hours

    # ─── Snapshot ─────────────────────────────────────────────────────────────

    def has_session(self) -> bool:
        return self.session.exists()

    def read_session(self) -> Optional[SessionSnapshot]:
        raw = self.session.read()
        if raw is None:
            return None
        try:
            return SessionSnapshot.model_validate(raw)
        except ValidationError as exc:
            log.warning("Stored session has an unexpected shape (%d errors) — ignoring it.", exc.error_count())
            return None

    def write_session(self, snapshot: SessionSnapshot) -> None:
        if self.session.write(snapshot.to_storage_state()):
            log.info("Session saved (%d cookies, %d origins)", len(snapshot.cookies), len(snapshot.origins))

    def clear_session(self) -> None:
        self.session.clear()

    def session_age_hours(self) -> Optional[float]:
        return self.session.age_hours()

    def is_session_stale(self, max_hours: Optional[float] = None) -> bool:
        """True when there is no session or it is older than `max_hours` (default: the store's threshold)."""
        age = self.session_age_hours()
        if max_hours is None:
            max_hours = self.stale_after_hours
        return age is None or age > max_hours

    # ─── Token cache ──────────────────────────────────────────────────────────

    def read_token_cache(self) -> Optional[CachedToken]:
        raw = self.token_cache.read()
        if raw is None:
            return None
        try:
            return CachedToken.model_validate(raw)
        except ValidationError:
            log.warning("Token cache has an unexpected shape — ignoring it.")
            return None

    def write_token_cache(self, cached: CachedToken) -> None:
        self.token_cache.write(cached.model_dump(by_alias=True))

    def clear_token_cache(self) -> None:
        self.token_cache.clear()

    # ─── Browser profile ──────────────────────────────────────────────────────

    @property
    def user_data_dir(self) -> Path:
        return self.data_dir / USER_DATA_DIR_NAME

    def ensure_user_data_dir(self) -> Path:
        return ensure_private_dir(self.user_data_dir)

    def clear_all(self) -> None:
        self.clear_session()
        self.clear_token_cache()
