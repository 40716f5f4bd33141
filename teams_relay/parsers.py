"""
teams_relay/parsers.py — pure transforms of Teams payloads into our types.

No I/O here. Everything takes decoded JSON (dicts/lists) and returns
dataclasses or plain values, so it can be tested with literal fixtures.
"""
import base64
import binascii
import html
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import quote

from teams_relay.models import TokenClaims, UserIdentity

ORGID_PREFIX = "8:orgid:"

_TAG        = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")
_GUID       = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_MESSAGE_ID = re.compile(r"^\d{13}$")
_CONV_MSGID = re.compile(r";messageid=(\d+)")


@dataclass
class SearchResult:
    id: str
    content: str
    type: str = "message"
    sender: Optional[str] = None
    timestamp: Optional[str] = None
    channel_name: Optional[str] = None
    team_name: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    message_link: Optional[str] = None


@dataclass
class Pagination:
    from_: int
    size: int
    returned: int
    total: Optional[int] = None
    has_more: bool = False


@dataclass
class SearchPage:
    results: List[SearchResult] = field(default_factory=list)
    pagination: Optional[Pagination] = None


@dataclass
class Person:
    id: str
    mri: str
    display_name: str
    email: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    company_name: Optional[str] = None


# ─── Text ─────────────────────────────────────────────────────────────────────

def strip_html(text: str) -> str:
    """Drop tags, decode entities, collapse whitespace."""
    text = _TAG.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE.sub(" ", text).strip()


def build_message_link(conversation_id: str, message_timestamp: Any) -> str:
    return f"https://teams.microsoft.com/l/message/{quote(conversation_id, safe='')}/{message_timestamp}"


def extract_message_timestamp(source: Optional[dict], timestamp: Optional[str] = None) -> Optional[str]:
    """
    Epoch-millis id of a message, used in deep links.

    The message's own timestamp wins: for channel replies the ;messageid= in
    ClientConversationId is the parent thread's id, not this message's.
    """
    if timestamp:
        try:
            parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return str(int(parsed.timestamp() * 1000))
        except ValueError:
            pass

    if source:
        for key in ("MessageId", "OriginalMessageId", "ReferenceObjectId"):
            value = source.get(key)
            if isinstance(value, str) and _MESSAGE_ID.match(value):
                return value

        client_conv_id = source.get("ClientConversationId")
        if isinstance(client_conv_id, str):
            match = _CONV_MSGID.search(client_conv_id)
            if match:
                return match.group(1)

    return None


# ─── Identity ─────────────────────────────────────────────────────────────────

def identity_from_claims(claims: TokenClaims) -> Optional[UserIdentity]:
    """Build a UserIdentity from token claims; needs both `oid` and `name`."""
    if not claims.oid or not claims.name:
        return None

    given_name = claims.given_name
    surname    = claims.family_name
    if not given_name:
        if "," in claims.name:
            parts = [p.strip() for p in claims.name.split(",")]
            if len(parts) == 2:
                surname, given_name = parts
        elif " " in claims.name:
            given_name, surname = claims.name.split(" ", 1)

    return UserIdentity(
        object_id=claims.oid,
        mri=f"{ORGID_PREFIX}{claims.oid}",
        email=claims.upn or claims.preferred_username or claims.email or "",
        display_name=claims.name,
        given_name=given_name,
        surname=surname,
        tenant_id=claims.tid,
    )


def extract_object_id(identifier: str) -> Optional[str]:
    """
    Normalise any user identifier Teams hands out to a lowercase object id.

    Accepted forms:
      8:orgid:<guid>, orgid:<guid>, <guid>@<tenant>, <guid>
      base64 GUID (22 chars unpadded / 24 padded, standard or urlsafe)

    The base64 form encodes the 16 GUID bytes in .NET's Guid.ToByteArray()
    order: the first three groups little-endian, the last two as-is.
    """
    value = identifier.strip()
    lowered = value.lower()
    if lowered.startswith(ORGID_PREFIX):
        value = value[len(ORGID_PREFIX):]
    elif lowered.startswith("orgid:"):
        value = value[len("orgid:"):]
    value = value.split("@", 1)[0]

    if _GUID.match(value):
        return value.lower()
    return _guid_from_base64(value)


def _guid_from_base64(value: str) -> Optional[str]:
    if len(value) not in (22, 24):
        return None
    padded = value.replace("-", "+").replace("_", "/")
    padded += "=" * (-len(padded) % 4)
    try:
        raw = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 16:
        return None
    return str(uuid.UUID(bytes_le=raw))


def normalise_mri(raw: str) -> Optional[str]:
    """
    Canonical MRI for a user id claim.

    `8:...` is already an MRI; `orgid:<id>` gains the `8:` type prefix; a bare
    GUID (or base64 GUID) becomes `8:orgid:<guid>`.
    """
    value = raw.strip()
    if not value:
        return None
    if value.startswith("8:"):
        return value
    if value.startswith("orgid:"):
        return f"8:{value}"
    object_id = extract_object_id(value)
    if object_id:
        return f"{ORGID_PREFIX}{object_id}"
    return None


def build_one_on_one_conversation_id(user_a: str, user_b: str) -> Optional[str]:
    """`19:{id1}_{id2}@unq.gbl.spaces` with the two object ids sorted."""
    a = extract_object_id(user_a)
    b = extract_object_id(user_b)
    if not a or not b:
        return None
    first, second = sorted((a, b))
    return f"19:{first}_{second}@unq.gbl.spaces"


# ─── Token status ─────────────────────────────────────────────────────────────

def calculate_token_status(expiry_ms: int, now_ms: int) -> dict:
    return {
        "is_valid":          expiry_ms > now_ms,
        "expires_at":        datetime.fromtimestamp(expiry_ms / 1000, tz=timezone.utc).isoformat(),
        "minutes_remaining": max(0, round((expiry_ms - now_ms) / 1000 / 60)),
    }


# ─── Search ───────────────────────────────────────────────────────────────────

def parse_v2_result(item: dict) -> Optional[SearchResult]:
    """One Substrate v2 query hit. Hits with almost no text are dropped."""
    content = item.get("HitHighlightedSummary") or item.get("Summary") or ""
    if not isinstance(content, str) or len(content) < 5:
        return None

    source = item.get("Source")
    if not isinstance(source, dict):
        source = {}

    # Thread id first so deep links land in the reply thread, not the channel
    conversation_id = None
    thread_id = source.get("ClientThreadId")
    if isinstance(thread_id, str) and thread_id:
        conversation_id = thread_id
    if not conversation_id:
        extensions = source.get("Extensions") or {}
        group_id = extensions.get("SkypeSpaces_ConversationPost_Extension_SkypeGroupId") if isinstance(extensions, dict) else None
        if isinstance(group_id, str) and group_id:
            conversation_id = group_id
    if not conversation_id:
        client_conv_id = source.get("ClientConversationId")
        if isinstance(client_conv_id, str) and client_conv_id:
            conversation_id = client_conv_id.split(";")[0]

    timestamp = (
        source.get("DateTimeReceived")
        or source.get("DateTimeSent")
        or source.get("DateTimeCreated")
        or source.get("ReceivedTime")
        or source.get("CreatedDateTime")
    )

    message_link = None
    if conversation_id:
        message_ts = extract_message_timestamp(source, timestamp)
        if message_ts:
            message_link = build_message_link(conversation_id, message_ts)

    return SearchResult(
        id=item.get("Id") or item.get("ReferenceId") or f"v2-{int(datetime.now().timestamp() * 1000)}",
        content=strip_html(content),
        sender=source.get("From") or source.get("Sender"),
        timestamp=timestamp,
        channel_name=source.get("ChannelName") or source.get("Topic"),
        team_name=source.get("TeamName") or source.get("GroupName"),
        conversation_id=conversation_id,
        message_id=item.get("ReferenceId"),
        message_link=message_link,
    )


def parse_search_results(entity_sets: Any) -> tuple:
    """Return (results, total) from a v2 query EntitySets array."""
    results: List[SearchResult] = []
    total = None
    if not isinstance(entity_sets, list):
        return results, total

    for entity_set in entity_sets:
        if not isinstance(entity_set, dict):
            continue
        for result_set in entity_set.get("ResultSets") or []:
            if not isinstance(result_set, dict):
                continue
            for key in ("Total", "TotalCount", "TotalEstimate"):
                if isinstance(result_set.get(key), int):
                    total = result_set[key]
                    break
            for item in result_set.get("Results") or []:
                if isinstance(item, dict):
                    parsed = parse_v2_result(item)
                    if parsed:
                        results.append(parsed)

    return results, total


def build_search_page(data: Any, from_: int, size: int, max_results: Optional[int] = None) -> SearchPage:
    entity_sets = data.get("EntitySets") if isinstance(data, dict) else None
    results, total = parse_search_results(entity_sets)
    limited = results[: max_results if max_results is not None else size]
    if total is not None:
        has_more = from_ + len(results) < total
    else:
        has_more = len(results) >= size
    return SearchPage(
        results=limited,
        pagination=Pagination(from_=from_, size=size, returned=len(limited), total=total, has_more=has_more),
    )


# ─── People ───────────────────────────────────────────────────────────────────

def parse_person_suggestion(item: dict) -> Optional[Person]:
    raw_id = item.get("Id")
    if not raw_id or not isinstance(raw_id, str):
        return None

    object_id = raw_id.split("@")[0]
    emails = item.get("EmailAddresses") or []
    return Person(
        id=object_id,
        mri=item.get("MRI") or f"{ORGID_PREFIX}{object_id}",
        display_name=item.get("DisplayName") or "",
        email=emails[0] if emails else None,
        given_name=item.get("GivenName"),
        surname=item.get("Surname"),
        job_title=item.get("JobTitle"),
        department=item.get("Department"),
        company_name=item.get("CompanyName"),
    )


def parse_people_results(groups: Any) -> List[Person]:
    people: List[Person] = []
    if not isinstance(groups, list):
        return people
    for group in groups:
        if not isinstance(group, dict):
            continue
        for suggestion in group.get("Suggestions") or []:
            if isinstance(suggestion, dict):
                person = parse_person_suggestion(suggestion)
                if person:
                    people.append(person)
    return people


# ─── Messages ─────────────────────────────────────────────────────────────────

_SKIPPED_MESSAGE_TYPES = ("Control/", "ThreadActivity/")


@dataclass
class ThreadMessage:
    id: str
    content: str
    content_type: str
    sender_mri: str
    sender_name: Optional[str]
    timestamp: str
    conversation_id: str
    client_message_id: Optional[str] = None
    is_from_me: bool = False
    message_link: Optional[str] = None


def html_paragraph(content: str) -> str:
    """Plain text becomes one escaped <p>; anything starting with '<' is sent as-is."""
    if content.startswith("<"):
        return content
    return f"<p>{html.escape(content)}</p>"


def parse_thread_messages(data: Any, conversation_id: str, user_mri: Optional[str] = None) -> List[ThreadMessage]:
    """chatsvc `messages` array → user-visible messages, oldest first."""
    raw_messages = data.get("messages") if isinstance(data, dict) else None
    if not isinstance(raw_messages, list):
        return []

    messages: List[ThreadMessage] = []
    for raw in raw_messages:
        if not isinstance(raw, dict):
            continue
        message_type = raw.get("messagetype")
        if not isinstance(message_type, str) or not message_type or message_type.startswith(_SKIPPED_MESSAGE_TYPES):
            continue
        message_id = raw.get("id") or raw.get("originalarrivaltime")
        if not message_id:
            continue

        timestamp = raw.get("originalarrivaltime") or raw.get("composetime")
        if not timestamp and str(message_id).isdigit():
            timestamp = datetime.fromtimestamp(int(message_id) / 1000, tz=timezone.utc).isoformat()

        sender_mri = raw.get("from")
        if not isinstance(sender_mri, str):
            sender_mri = ""
        # `from` is a full contact URL; the MRI is its last path segment
        if "/contacts/" in sender_mri:
            sender_mri = sender_mri.rsplit("/contacts/", 1)[1]

        messages.append(ThreadMessage(
            id=str(message_id),
            content=strip_html(raw.get("content") or ""),
            content_type=message_type,
            sender_mri=sender_mri,
            sender_name=raw.get("imdisplayname") or raw.get("displayName"),
            timestamp=timestamp or "",
            conversation_id=conversation_id,
            client_message_id=raw.get("clientmessageid"),
            is_from_me=bool(user_mri) and sender_mri == user_mri,
            message_link=build_message_link(conversation_id, message_id) if str(message_id).isdigit() else None,
        ))

    messages.sort(key=lambda m: m.timestamp)
    return messages


# ─── Favourites / teams (CSA) ─────────────────────────────────────────────────

FAVOURITES_FOLDER_TYPE = "Favorites"


@dataclass
class FavouriteItem:
    conversation_id: str
    created_time: Optional[int] = None
    last_updated_time: Optional[int] = None


@dataclass
class FavouritesFolder:
    items: List[FavouriteItem] = field(default_factory=list)
    folder_id: Optional[str] = None
    folder_hierarchy_version: Optional[int] = None


def parse_favourites(data: Any) -> FavouritesFolder:
    if not isinstance(data, dict):
        return FavouritesFolder()
    version = data.get("folderHierarchyVersion")

    for folder in data.get("conversationFolders") or []:
        if not isinstance(folder, dict) or folder.get("folderType") != FAVOURITES_FOLDER_TYPE:
            continue
        items = [
            FavouriteItem(
                conversation_id=item["conversationId"],
                created_time=item.get("createdTime"),
                last_updated_time=item.get("lastUpdatedTime"),
            )
            for item in folder.get("conversationFolderItems") or []
            if isinstance(item, dict) and item.get("conversationId")
        ]
        return FavouritesFolder(items=items, folder_id=folder.get("id"), folder_hierarchy_version=version)

    return FavouritesFolder(folder_hierarchy_version=version)


@dataclass
class Channel:
    id: str
    display_name: str
    is_general: bool = False


@dataclass
class Team:
    id: str
    display_name: str
    description: Optional[str] = None
    channels: List[Channel] = field(default_factory=list)


def parse_teams_list(data: Any) -> List[Team]:
    teams: List[Team] = []
    if not isinstance(data, dict):
        return teams
    for raw in data.get("teams") or []:
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        channels = [
            Channel(
                id=channel["id"],
                display_name=channel.get("displayName") or "",
                is_general=bool(channel.get("isGeneral")),
            )
            for channel in raw.get("channels") or []
            if isinstance(channel, dict) and channel.get("id")
        ]
        teams.append(Team(
            id=raw["id"],
            display_name=raw.get("displayName") or "",
            description=raw.get("description"),
            channels=channels,
        ))
    return teams


@dataclass
class ChannelMatch:
    channel_id: str
    channel_name: str
    team_id: str
    team_name: str
    is_general: bool = False
    is_member: bool = True


def match_channels(teams: List[Team], query: str, limit: int) -> List[ChannelMatch]:
    """
    Channels whose name contains `query` (case-insensitive), exact names first.

    A team name match also counts for its General channel, since Teams shows
    that channel under the team's own name.
    """
    needle = query.strip().lower()
    if not needle:
        return []

    exact: List[ChannelMatch] = []
    partial: List[ChannelMatch] = []
    for team in teams:
        for channel in team.channels:
            name = channel.display_name.lower()
            if needle in name or (channel.is_general and needle in team.display_name.lower()):
                match = ChannelMatch(
                    channel_id=channel.id,
                    channel_name=channel.display_name,
                    team_id=team.id,
                    team_name=team.display_name,
                    is_general=channel.is_general,
                )
                (exact if name == needle else partial).append(match)
    return (exact + partial)[:limit]


# ─── Presence ─────────────────────────────────────────────────────────────────

@dataclass
class Presence:
    mri: str
    availability: Optional[str] = None
    activity: Optional[str] = None


def parse_presence(data: Any) -> List[Presence]:
    """getpresence returns a bare list of {mri, presence: {availability, activity}}."""
    presences: List[Presence] = []
    if not isinstance(data, list):
        return presences
    for item in data:
        if not isinstance(item, dict) or not item.get("mri"):
            continue
        presence = item.get("presence") if isinstance(item.get("presence"), dict) else {}
        presences.append(Presence(
            mri=item["mri"],
            availability=presence.get("availability"),
            activity=presence.get("activity"),
        ))
    return presences
