"""
teams_relay/endpoints.py — URLs, headers and request bodies for Teams' internal APIs.

Four backends, each wanting a different credential:

  Substrate  (search, people)       Authorization: Bearer <search token>
  chatsvc    (messages)             skypetoken cookie + authtoken cookie
  CSA        (favourites, teams)    skypetoken cookie + chat-aggregator token
  Presence                          Authorization: Bearer <chat token>
"""
import logging
import re
import time
import uuid
from typing import List, Optional
from urllib.parse import quote

from teams_relay import config

log = logging.getLogger("teams_relay.endpoints")

SUBSTRATE_SEARCH_URL      = "https://substrate.office.com/searchservice/api/v2/query"
SUBSTRATE_SUGGESTIONS_URL = "https://substrate.office.com/search/api/v1/suggestions"
PRESENCE_URL              = "https://presence.teams.microsoft.com/v1/presence/getpresence/"

CLIENT_VERSION = "1415/1.0.0.2025010401"

PEOPLE_FIELDS = [
    "Id",
    "MRI",
    "DisplayName",
    "EmailAddresses",
    "GivenName",
    "Surname",
    "JobTitle",
    "Department",
    "CompanyName",
]

_REGION = re.compile(r"^[a-z]{2,10}$")


def validate_region(region: Optional[str]) -> str:
    """Region segment for chatsvc / CSA URLs; anything odd falls back to the default."""
    if region and _REGION.match(region):
        return region
    if region:
        log.warning("Ignoring invalid region %r, using %r", region, config.DEFAULT_REGION)
    return config.DEFAULT_REGION


# ─── URLs ─────────────────────────────────────────────────────────────────────

def people_search_url() -> str:
    return f"{SUBSTRATE_SUGGESTIONS_URL}?scenario=powerbar"


def frequent_contacts_url() -> str:
    return f"{SUBSTRATE_SUGGESTIONS_URL}?scenario=peoplecache"


def messages_url(region: str, conversation_id: str, reply_to: Optional[str] = None) -> str:
    """Replies post to `<conversation>;messageid=<thread root>`."""
    path = f"{conversation_id};messageid={reply_to}" if reply_to else conversation_id
    return (
        f"{config.TEAMS_URL}/api/chatsvc/{validate_region(region)}/v1/users/ME/conversations/"
        f"{quote(path, safe='')}/messages"
    )


def message_url(region: str, conversation_id: str, message_id: str) -> str:
    """One existing message, for edits and soft deletes."""
    return f"{messages_url(region, conversation_id)}/{quote(message_id, safe='')}"


def message_metadata_url(region: str, conversation_id: str, message_id: str) -> str:
    """Per-message metadata; the saved (bookmarked) flag lives here."""
    return (
        f"{config.TEAMS_URL}/api/chatsvc/{validate_region(region)}/v1/users/ME/conversations/"
        f"{quote(conversation_id, safe='')}/rcmetadata/{quote(message_id, safe='')}"
    )


def conversation_folders_url(region: str) -> str:
    return (
        f"{config.TEAMS_URL}/api/csa/{validate_region(region)}/api/v1/teams/users/me/conversationFolders"
        "?supportsAdditionalSystemGeneratedFolders=true&supportsSliceItems=true"
    )


def teams_list_url(region: str) -> str:
    return (
        f"{config.TEAMS_URL}/api/csa/{validate_region(region)}/api/v3/teams/users/me"
        "?isPrefetch=false&enableMembershipSummary=true"
    )


# ─── Headers ──────────────────────────────────────────────────────────────────

def teams_headers() -> dict:
    return {
        "Content-Type": "application/json",
        "Accept":       "application/json",
        "Origin":       config.TEAMS_ORIGIN,
        "Referer":      f"{config.TEAMS_ORIGIN}/",
    }


def bearer_headers(token: str) -> dict:
    return {**teams_headers(), "Authorization": f"Bearer {token}"}


def skype_auth_headers(skype_token: str, bearer: str) -> dict:
    """chatsvc and CSA both pair the skypetoken with a bearer."""
    return {
        **teams_headers(),
        "Authentication": f"skypetoken={skype_token}",
        "Authorization":  f"Bearer {bearer}",
    }


def messaging_headers(skype_token: str, auth_token: str) -> dict:
    return {**skype_auth_headers(skype_token, auth_token), "X-Ms-Client-Version": CLIENT_VERSION}


# ─── Bodies ───────────────────────────────────────────────────────────────────

def search_body(query: str, from_: int, size: int) -> dict:
    return {
        "entityRequests": [{
            "entityType":     "Message",
            "contentSources": ["Teams"],
            "propertySet":    "Optimized",
            "fields": [
                "Extension_SkypeSpaces_ConversationPost_Extension_FromSkypeInternalId_String",
                "Extension_SkypeSpaces_ConversationPost_Extension_ThreadType_String",
                "Extension_SkypeSpaces_ConversationPost_Extension_SkypeGroupId_String",
            ],
            "query": {
                "queryString":        f"{query} AND NOT (isClientSoftDeleted:TRUE)",
                "displayQueryString": query,
            },
            "from":            from_,
            "size":            size,
            "topResultsCount": 5,
        }],
        "QueryAlterationOptions": {
            "EnableAlteration":             True,
            "EnableSuggestion":             True,
            "SupportedRecourseDisplayTypes": ["Suggestion"],
        },
        "cvid":      str(uuid.uuid4()),
        "logicalId": str(uuid.uuid4()),
        "scenario": {
            "Dimensions": [
                {"DimensionName": "QueryType",  "DimensionValue": "Messages"},
                {"DimensionName": "FormFactor", "DimensionValue": "general.web.reactSearch"},
            ],
            "Name": "powerbar",
        },
        "timezone": "UTC",
    }


def people_body(query: str, limit: int) -> dict:
    return {
        "EntityRequests": [{
            "Query":      {"QueryString": query, "DisplayQueryString": query},
            "EntityType": "People",
            "Size":       limit,
            "Fields":     PEOPLE_FIELDS,
        }],
        "cvid":      str(uuid.uuid4()),
        "logicalId": str(uuid.uuid4()),
    }


def message_body(html_content: str, display_name: str, client_message_id: Optional[str] = None) -> dict:
    return {
        "content":         html_content,
        "messagetype":     "RichText/Html",
        "contenttype":     "text",
        "imdisplayname":   display_name,
        "clientmessageid": client_message_id or str(int(time.time() * 1000)),
    }


def favourite_action_body(action: str, folder_id: str, item_id: str, hierarchy_version: Optional[int]) -> dict:
    return {
        "folderHierarchyVersion": hierarchy_version,
        "actions": [{"action": action, "folderId": folder_id, "itemId": item_id}],
    }


def presence_body(mris: List[str]) -> list:
    return [{"mri": mri} for mri in mris]


def edit_message_body(
    conversation_id: str,
    message_id: str,
    html_content: str,
    display_name: str,
) -> dict:
    return {
        "id":             message_id,
        "type":           "Message",
        "conversationid": conversation_id,
        "content":        html_content,
        "messagetype":    "RichText/Html",
        "contenttype":    "text",
        "imdisplayname":  display_name,
    }


def saved_state_body(message_id: str, saved: bool) -> dict:
    """`mid` must be the numeric message id; anything else raises ValueError."""
    return {"s": 1 if saved else 0, "mid": int(message_id)}
