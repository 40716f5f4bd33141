"""
teams_relay/tokens.py — credential extraction from a captured session.

Teams' web client (MSAL) keeps one localStorage entry per access token it has
minted. Each value is JSON shaped like:

    {"secret": "eyJ…", "target": "https://substrate.office.com/SubstrateSearch-Internal.ReadWrite …", …}

Different internal services want tokens for different audiences, so each
extractor below scans the snapshot for its own `target`, decodes the token's
claims (no signature check: Teams already validated it, we only need `exp`,
`oid` and friends), and picks the best live candidate.

Messaging is different: it authenticates with two cookies
(`skypetoken_asm` + `authtoken`) rather than a localStorage token.

Everything here is a pure function of the snapshot and `now`. Entries that
fail to parse are skipped; an extractor only returns None when nothing in the
whole snapshot qualifies.
"""
import base64
import binascii
import json
import logging
import re
import time
from typing import Iterator, Optional, Tuple
from urllib.parse import unquote

from pydantic import ValidationError

from teams_relay.config import TEAMS_DOMAIN, TEAMS_ORIGIN
from teams_relay.errors import MalformedCredentialEntry
from teams_relay.models import (
    CachedSecret,
    ChatCredential,
    FavouritesCredential,
    MessagingCredential,
    OriginStorage,
    RegionConfig,
    SearchCredential,
    SessionSnapshot,
    StorageEntry,
    TokenClaims,
    UserIdentity,
)
from teams_relay.parsers import ORGID_PREFIX, calculate_token_status, identity_from_claims, normalise_mri

log = logging.getLogger("teams_relay.tokens")

SEARCH_TARGET_HOST   = "substrate.office.com"
SEARCH_TARGET_SCOPE  = "SubstrateSearch"
CHAT_AGG_TARGET      = "chatsvcagg.teams.microsoft.com"
SKYPE_SPACES_TARGET  = "api.spaces.skype.com"

SKYPE_TOKEN_COOKIE   = "skypetoken_asm"
AUTH_TOKEN_COOKIE    = "authtoken"
BEARER_COOKIE_PREFIX = "Bearer="
TEMP_ENTRY_PREFIX    = "tmp."

REGION_DISCOVERY_KEY = "DISCOVER-REGION-GTM"

_PARTITIONED_MT = re.compile(r"/api/mt/part/([a-z]+)-(\d+)", re.I)
_PLAIN_MT       = re.compile(r"/api/mt/([a-z]+)(?:/|$)", re.I)
_CHATSVC        = re.compile(r"/api/chatsvc/([a-z]+)(?:/|$)", re.I)


# ─── Decode primitives ────────────────────────────────────────────────────────

def _parse_claims(token: str) -> TokenClaims:
    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        raise MalformedCredentialEntry("not a dotted token")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError) as exc:
        raise MalformedCredentialEntry("undecodable payload") from exc
    if not isinstance(data, dict):
        raise MalformedCredentialEntry("payload is not an object")
    try:
        return TokenClaims.model_validate(data)
    except ValidationError as exc:
        raise MalformedCredentialEntry("unexpected claim types") from exc


def decode_token(token: Optional[str]) -> Optional[TokenClaims]:
    """Claims of a JWT-shaped string, or None if it isn't one."""
    if not isinstance(token, str):
        return None
    try:
        return _parse_claims(token)
    except MalformedCredentialEntry:
        return None


def _cached_secret(entry: StorageEntry) -> CachedSecret:
    try:
        data = json.loads(entry.value)
    except ValueError as exc:
        raise MalformedCredentialEntry(entry.name) from exc
    if not isinstance(data, dict):
        raise MalformedCredentialEntry(entry.name)
    try:
        return CachedSecret.model_validate(data)
    except ValidationError as exc:
        raise MalformedCredentialEntry(entry.name) from exc


def _token_entries(origin: OriginStorage) -> Iterator[Tuple[str, str, TokenClaims]]:
    """Yield (target, secret, claims) for every entry holding a decodable token."""
    for entry in origin.local_storage:
        try:
            cached = _cached_secret(entry)
            if not cached.secret:
                continue
            claims = _parse_claims(cached.secret)
        except MalformedCredentialEntry:
            continue
        yield cached.target or "", cached.secret, claims


def _teams_origin(snapshot: Optional[SessionSnapshot]) -> Optional[OriginStorage]:
    if snapshot is None:
        return None
    return snapshot.origin(TEAMS_ORIGIN)


def _now(now: Optional[float]) -> float:
    return time.time() if now is None else now


def _is_search_target(target: str) -> bool:
    return SEARCH_TARGET_HOST in target and SEARCH_TARGET_SCOPE in target


# ─── Search ───────────────────────────────────────────────────────────────────

def extract_search_token(
    snapshot: Optional[SessionSnapshot],
    now: Optional[float] = None,
) -> Optional[SearchCredential]:
    """
    The live Substrate search token with the furthest-future expiry.

    MSAL leaves stale copies behind, so the first match is not good enough.
    """
    teams = _teams_origin(snapshot)
    if teams is None:
        return None

    now = _now(now)
    best: Optional[Tuple[str, TokenClaims]] = None
    for target, secret, claims in _token_entries(teams):
        if not _is_search_target(target):
            continue
        if claims.exp is None or claims.exp <= now:
            continue
        if best is None or claims.exp > best[1].exp:
            best = (secret, claims)

    if best is None:
        log.debug("No live search token among %d Teams storage entries", len(teams.local_storage))
        return None
    return SearchCredential(token=best[0], expiry=best[1].expiry)


def get_search_token_status(snapshot: Optional[SessionSnapshot], now: Optional[float] = None) -> dict:
    """Diagnostics for the status surfaces."""
    now = _now(now)
    search = extract_search_token(snapshot, now)
    if search is None:
        return {"has_token": False}
    status = calculate_token_status(int(search.expiry.timestamp() * 1000), int(now * 1000))
    return {
        "has_token":         status["is_valid"],
        "expires_at":        status["expires_at"],
        "minutes_remaining": status["minutes_remaining"],
    }


def are_tokens_expired(snapshot: Optional[SessionSnapshot], now: Optional[float] = None) -> bool:
    return extract_search_token(snapshot, now) is None


# ─── Chat ─────────────────────────────────────────────────────────────────────

def extract_chat_token(
    snapshot: Optional[SessionSnapshot],
    now: Optional[float] = None,
) -> Optional[ChatCredential]:
    """
    Bearer for the chat aggregator, falling back to the skype-spaces audience.

    A chatsvcagg token wins whenever one is live, even if a spaces token
    outlives it. All three of token, future expiry and user MRI are required.
    """
    teams = _teams_origin(snapshot)
    if teams is None:
        return None

    now = _now(now)
    best_agg: Optional[Tuple[str, TokenClaims]] = None
    best_spaces: Optional[Tuple[str, TokenClaims]] = None
    object_id: Optional[str] = None

    for target, secret, claims in _token_entries(teams):
        if not target or claims.exp is None:
            continue
        if object_id is None and claims.oid:
            object_id = claims.oid
        if claims.exp <= now:
            continue
        if CHAT_AGG_TARGET in target and (best_agg is None or claims.exp > best_agg[1].exp):
            best_agg = (secret, claims)
        if SKYPE_SPACES_TARGET in target and (best_spaces is None or claims.exp > best_spaces[1].exp):
            best_spaces = (secret, claims)

    if object_id is None:
        search = extract_search_token(snapshot, now)
        search_claims = decode_token(search.token) if search else None
        if search_claims and search_claims.oid:
            object_id = search_claims.oid

    chosen = best_agg or best_spaces
    if chosen is None or object_id is None:
        return None

    secret, claims = chosen
    return ChatCredential(token=secret, expiry=claims.expiry, user_mri=f"{ORGID_PREFIX}{object_id}")


# ─── Messaging (cookies) ──────────────────────────────────────────────────────

def _teams_cookie(snapshot: SessionSnapshot, name: str) -> Optional[str]:
    value = None
    for cookie in snapshot.cookies:
        if cookie.name == name and TEAMS_DOMAIN in cookie.domain:
            value = cookie.value
    return value


def extract_message_auth(snapshot: Optional[SessionSnapshot]) -> Optional[MessagingCredential]:
    """
    The skypetoken + authtoken cookie pair used by the chat service.

    The user MRI comes from the skype token's `skypeid` claim when present
    (either `orgid:<id>` or `8:orgid:<id>`), else from the auth token's `oid`.
    """
    if snapshot is None:
        return None

    skype_token = _teams_cookie(snapshot, SKYPE_TOKEN_COOKIE)
    raw_auth    = _teams_cookie(snapshot, AUTH_TOKEN_COOKIE)
    if not skype_token or not raw_auth:
        return None

    auth_token = unquote(raw_auth)
    if auth_token.startswith(BEARER_COOKIE_PREFIX):
        auth_token = auth_token[len(BEARER_COOKIE_PREFIX):]
    if not auth_token:
        return None

    user_mri = None
    skype_claims = decode_token(skype_token)
    if skype_claims and skype_claims.skypeid:
        user_mri = normalise_mri(skype_claims.skypeid)
    if user_mri is None:
        auth_claims = decode_token(auth_token)
        if auth_claims and auth_claims.oid:
            user_mri = f"{ORGID_PREFIX}{auth_claims.oid}"
    if user_mri is None:
        return None

    return MessagingCredential(skype_token=skype_token, auth_token=auth_token, user_mri=user_mri)


# ─── Favourites (CSA) ─────────────────────────────────────────────────────────

def extract_favourites_token(snapshot: Optional[SessionSnapshot]) -> Optional[str]:
    """
    First chat-aggregator secret found in any origin, matched on the key.

    Looser than the other extractors on purpose: no audience or expiry check.
    """
    if snapshot is None:
        return None
    for origin in snapshot.origins:
        for entry in origin.local_storage:
            if CHAT_AGG_TARGET not in entry.name or entry.name.startswith(TEMP_ENTRY_PREFIX):
                continue
            try:
                cached = _cached_secret(entry)
            except MalformedCredentialEntry:
                continue
            if cached.secret:
                return cached.secret
    return None


def extract_favourites_credential(snapshot: Optional[SessionSnapshot]) -> Optional[FavouritesCredential]:
    auth  = extract_message_auth(snapshot)
    token = extract_favourites_token(snapshot)
    if auth is None or token is None:
        return None
    return FavouritesCredential(skype_token=auth.skype_token, favourites_token=token)


# ─── Identity ─────────────────────────────────────────────────────────────────

def extract_user_identity(snapshot: Optional[SessionSnapshot]) -> Optional[UserIdentity]:
    """First stored token carrying both `oid` and `name`."""
    teams = _teams_origin(snapshot)
    if teams is None:
        return None
    for _target, _secret, claims in _token_entries(teams):
        identity = identity_from_claims(claims)
        if identity:
            return identity
    return None


def extract_user_display_name(snapshot: Optional[SessionSnapshot]) -> Optional[str]:
    teams = _teams_origin(snapshot)
    if teams is None:
        return None

    for entry in teams.local_storage:
        if "displayName" not in entry.value and "givenName" not in entry.value:
            continue
        try:
            data = json.loads(entry.value)
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        if isinstance(data.get("displayName"), str):
            return data["displayName"]
        name = data.get("name")
        if isinstance(name, dict) and isinstance(name.get("displayName"), str):
            return name["displayName"]

    identity = extract_user_identity(snapshot)
    return identity.display_name if identity else None


# ─── Region ───────────────────────────────────────────────────────────────────

def region_from_discovery(item: dict) -> Optional[RegionConfig]:
    """
    Region routing from the discovery blob's service URLs.

    middleTier is either partitioned (…/api/mt/part/amer-02) or plain
    (…/api/mt/emea); chatServiceAfd (…/api/chatsvc/amer) is the last resort.
    """
    middle_tier = item.get("middleTier")
    chat_url    = item.get("chatServiceAfd")
    middle_tier = middle_tier if isinstance(middle_tier, str) else None
    chat_url    = chat_url if isinstance(chat_url, str) else None

    region = partition = None
    if middle_tier:
        match = _PARTITIONED_MT.search(middle_tier)
        if match:
            region, partition = match.group(1).lower(), match.group(2)
        else:
            match = _PLAIN_MT.search(middle_tier)
            if match and match.group(1).lower() != "part":
                region = match.group(1).lower()
    if region is None and chat_url:
        match = _CHATSVC.search(chat_url)
        if match:
            region = match.group(1).lower()
    if region is None:
        return None

    return RegionConfig(
        region=region,
        partition=partition,
        chat_service_url=chat_url,
        middle_tier_url=middle_tier,
    )


def extract_region_config(snapshot: Optional[SessionSnapshot]) -> Optional[RegionConfig]:
    if snapshot is None:
        return None
    for origin in snapshot.origins:
        for entry in origin.local_storage:
            if REGION_DISCOVERY_KEY not in entry.name:
                continue
            try:
                data = json.loads(entry.value)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            item = data.get("item") if isinstance(data.get("item"), dict) else data
            region = region_from_discovery(item)
            if region:
                return region
    return None
