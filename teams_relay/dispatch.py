"""
teams_relay/dispatch.py — one method per Teams operation.

Each operation:
  1. asks the orchestrator for the credential of its audience
  2. calls the endpoint directly with it
  3. on 401, invalidates that audience and raises AuthExpired

Search is the only operation with a slow path: when no search token exists,
or the direct call is rejected, it drives the Teams web UI in a browser and
captures the response the client itself receives. That fallback happens at
most once per call.
"""
import logging
from typing import Any, List, Optional

from playwright.async_api import Error as PlaywrightError

from teams_relay import config
from teams_relay.auth import AuthOrchestrator
from teams_relay.endpoints import (
    PRESENCE_URL,
    SUBSTRATE_SEARCH_URL,
    bearer_headers,
    conversation_folders_url,
    edit_message_body,
    favourite_action_body,
    frequent_contacts_url,
    message_body,
    message_metadata_url,
    message_url,
    messages_url,
    messaging_headers,
    people_body,
    people_search_url,
    presence_body,
    saved_state_body,
    search_body,
    skype_auth_headers,
    teams_list_url,
)
from teams_relay.errors import AuthExpired, AuthFailed, AuthRequired
from teams_relay.models import Audience, UserIdentity
from teams_relay.parsers import (
    ChannelMatch,
    FavouritesFolder,
    Person,
    Presence,
    SearchPage,
    Team,
    ThreadMessage,
    build_one_on_one_conversation_id,
    build_search_page,
    extract_object_id,
    html_paragraph,
    match_channels,
    normalise_mri,
    parse_favourites,
    parse_people_results,
    parse_presence,
    parse_teams_list,
    parse_thread_messages,
)
from teams_relay.teams_client import TeamsClient
from teams_relay.tokens import extract_region_config, extract_user_display_name, extract_user_identity

log = logging.getLogger("teams_relay.dispatch")


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


class TeamsService:

    def __init__(
        self,
        auth: AuthOrchestrator,
        client: TeamsClient,
        *,
        headless_search: bool = config.HEADLESS_SEARCH,
    ) -> None:
        self.auth = auth
        self.client = client
        self._headless_search = headless_search

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _region(self) -> str:
        region = extract_region_config(self.auth.snapshot())
        return region.region if region else config.DEFAULT_REGION

    async def _call(self, audience: Audience, method: str, url: str, headers: dict, json: Any = None) -> Any:
        try:
            return await self.client.request(method, url, audience=audience.value, headers=headers, json=json)
        except AuthExpired:
            log.warning("%s credential rejected (401) — invalidating it.", audience.value)
            self.auth.invalidate(audience)
            raise

    # ─── Search (Substrate) ───────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        from_: int = 0,
        size: int = config.DEFAULT_PAGE_SIZE,
        max_results: Optional[int] = None,
    ) -> SearchPage:
        from_ = max(0, from_)
        size  = _clamp(size, 1, config.MAX_PAGE_SIZE)

        try:
            credential = self.auth.get_credential(Audience.SEARCH)
        except AuthRequired:
            log.info("No search token stored — searching through the browser.")
            return await self._browser_search(query, from_, size, max_results)

        try:
            data = await self._call(
                Audience.SEARCH, "POST", SUBSTRATE_SEARCH_URL,
                bearer_headers(credential.token), search_body(query, from_, size),
            )
        except AuthExpired:
            log.info("Retrying search through the browser.")
            return await self._browser_search(query, from_, size, max_results)

        return build_search_page(data or {}, from_, size, max_results)

    async def _browser_search(self, query: str, from_: int, size: int, max_results: Optional[int]) -> SearchPage:
        async with self.auth.browser_session(headless=self._headless_search) as session:
            try:
                data = await session.search(query)
            except PlaywrightError as exc:
                raise AuthFailed(f"Browser search failed: {exc}") from exc
        return build_search_page(data, from_, size, max_results)

    async def search_people(self, query: str, limit: int = config.DEFAULT_PEOPLE_LIMIT) -> List[Person]:
        credential = self.auth.get_credential(Audience.SEARCH)
        limit = _clamp(limit, 1, config.MAX_PEOPLE_LIMIT)
        data = await self._call(
            Audience.SEARCH, "POST", people_search_url(),
            bearer_headers(credential.token), people_body(query, limit),
        )
        return parse_people_results((data or {}).get("Groups"))

    async def get_frequent_contacts(self, limit: int = config.MAX_PEOPLE_LIMIT) -> List[Person]:
        credential = self.auth.get_credential(Audience.SEARCH)
        limit = _clamp(limit, 1, config.MAX_PEOPLE_LIMIT)
        data = await self._call(
            Audience.SEARCH, "POST", frequent_contacts_url(),
            bearer_headers(credential.token), people_body("", limit),
        )
        return parse_people_results((data or {}).get("Groups"))

    # ─── Messages (chatsvc) ───────────────────────────────────────────────────

    async def send_message(
        self,
        content: str,
        conversation_id: str = config.SELF_CHAT_ID,
        reply_to: Optional[str] = None,
    ) -> dict:
        """
        Post `content` to a conversation (default: the user's own notes).

        `reply_to` is the id of a channel thread's root message.
        """
        if not content.strip():
            raise ValueError("Message content is empty.")

        credential = self.auth.get_credential(Audience.MESSAGING)
        snapshot = self.auth.snapshot()
        display_name = extract_user_display_name(snapshot) or "User"

        body = message_body(html_paragraph(content), display_name)
        data = await self._call(
            Audience.MESSAGING, "POST", messages_url(self._region(), conversation_id, reply_to),
            messaging_headers(credential.skype_token, credential.auth_token), body,
        )
        log.info("Message sent to %s", conversation_id)
        return {
            "message_id":      body["clientmessageid"],
            "conversation_id": conversation_id,
            "timestamp":       (data or {}).get("OriginalArrivalTime"),
        }

    async def get_thread(self, conversation_id: str, limit: int = config.DEFAULT_THREAD_LIMIT) -> List[ThreadMessage]:
        credential = self.auth.get_credential(Audience.MESSAGING)
        limit = _clamp(limit, 1, config.MAX_THREAD_LIMIT)
        url = f"{messages_url(self._region(), conversation_id)}?view=msnp24Equivalent&pageSize={limit}"
        data = await self._call(
            Audience.MESSAGING, "GET", url,
            skype_auth_headers(credential.skype_token, credential.auth_token),
        )
        return parse_thread_messages(data, conversation_id, credential.user_mri)

    async def edit_message(self, conversation_id: str, message_id: str, content: str) -> dict:
        """Replace the content of one of the user's own messages."""
        if not content.strip():
            raise ValueError("Message content is empty.")

        credential = self.auth.get_credential(Audience.MESSAGING)
        display_name = extract_user_display_name(self.auth.snapshot()) or "User"
        body = edit_message_body(conversation_id, message_id, html_paragraph(content), display_name)
        await self._call(
            Audience.MESSAGING, "PUT", message_url(self._region(), conversation_id, message_id),
            messaging_headers(credential.skype_token, credential.auth_token), body,
        )
        log.info("Message %s edited in %s", message_id, conversation_id)
        return {"message_id": message_id, "conversation_id": conversation_id}

    async def delete_message(self, conversation_id: str, message_id: str) -> dict:
        """Soft-delete a message; Teams leaves a "message deleted" placeholder."""
        credential = self.auth.get_credential(Audience.MESSAGING)
        url = f"{message_url(self._region(), conversation_id, message_id)}?behavior=softDelete"
        await self._call(
            Audience.MESSAGING, "DELETE", url,
            skype_auth_headers(credential.skype_token, credential.auth_token),
        )
        log.info("Message %s deleted from %s", message_id, conversation_id)
        return {"message_id": message_id, "conversation_id": conversation_id}

    async def save_message(self, conversation_id: str, message_id: str) -> dict:
        return await self._set_saved_state(conversation_id, message_id, True)

    async def unsave_message(self, conversation_id: str, message_id: str) -> dict:
        return await self._set_saved_state(conversation_id, message_id, False)

    async def _set_saved_state(self, conversation_id: str, message_id: str, saved: bool) -> dict:
        if not message_id.isdigit():
            raise ValueError(f"Message id must be numeric, got {message_id!r}.")

        credential = self.auth.get_credential(Audience.MESSAGING)
        await self._call(
            Audience.MESSAGING, "PUT", message_metadata_url(self._region(), conversation_id, message_id),
            skype_auth_headers(credential.skype_token, credential.auth_token),
            saved_state_body(message_id, saved),
        )
        return {"conversation_id": conversation_id, "message_id": message_id, "saved": saved}

    def get_chat(self, user_id: str) -> dict:
        """
        The 1:1 conversation id with another user (no network call).

        Teams creates the conversation when the first message is sent to it.
        """
        credential = self.auth.get_credential(Audience.MESSAGING)
        current_user_id = extract_object_id(credential.user_mri)
        if current_user_id is None:
            raise AuthRequired(Audience.MESSAGING.value, "Could not read your user id from the stored session.")

        other_user_id = extract_object_id(user_id)
        if other_user_id is None:
            raise ValueError(
                f"Invalid user identifier {user_id!r}. Expected an MRI (8:orgid:<guid>), "
                "<guid>@<tenant> or a raw object id."
            )

        return {
            "conversation_id": build_one_on_one_conversation_id(current_user_id, other_user_id),
            "other_user_id":   other_user_id,
            "current_user_id": current_user_id,
        }

    # ─── Favourites / teams (CSA) ─────────────────────────────────────────────

    async def get_favourites(self) -> FavouritesFolder:
        credential = self.auth.get_credential(Audience.FAVOURITES)
        data = await self._call(
            Audience.FAVOURITES, "GET", conversation_folders_url(self._region()),
            skype_auth_headers(credential.skype_token, credential.favourites_token),
        )
        return parse_favourites(data)

    async def add_favourite(self, conversation_id: str) -> None:
        await self._modify_favourite(conversation_id, "AddItem")

    async def remove_favourite(self, conversation_id: str) -> None:
        await self._modify_favourite(conversation_id, "RemoveItem")

    async def _modify_favourite(self, conversation_id: str, action: str) -> None:
        current = await self.get_favourites()
        if not current.folder_id:
            raise LookupError("Could not find the Favorites folder.")

        credential = self.auth.get_credential(Audience.FAVOURITES)
        await self._call(
            Audience.FAVOURITES, "POST", conversation_folders_url(self._region()),
            skype_auth_headers(credential.skype_token, credential.favourites_token),
            favourite_action_body(action, current.folder_id, conversation_id, current.folder_hierarchy_version),
        )
        log.info("Favourites: %s %s", action, conversation_id)

    async def get_my_teams(self) -> List[Team]:
        credential = self.auth.get_credential(Audience.FAVOURITES)
        data = await self._call(
            Audience.FAVOURITES, "GET", teams_list_url(self._region()),
            skype_auth_headers(credential.skype_token, credential.favourites_token),
        )
        return parse_teams_list(data)

    async def find_channel(self, query: str, limit: int = config.DEFAULT_CHANNEL_LIMIT) -> List[ChannelMatch]:
        """Channels of the user's own teams whose name contains `query`."""
        limit = _clamp(limit, 1, config.MAX_CHANNEL_LIMIT)
        return match_channels(await self.get_my_teams(), query, limit)

    # ─── People ───────────────────────────────────────────────────────────────

    async def get_presence(self, mris: List[str]) -> List[Presence]:
        normalised = [mri for mri in (normalise_mri(raw) for raw in mris) if mri]
        if not normalised:
            return []
        credential = self.auth.get_credential(Audience.PRESENCE)
        data = await self._call(
            Audience.PRESENCE, "POST", PRESENCE_URL,
            bearer_headers(credential.token), presence_body(normalised),
        )
        return parse_presence(data)

    def get_me(self) -> UserIdentity:
        identity = extract_user_identity(self.auth.snapshot())
        if identity is None:
            raise AuthRequired(Audience.CHAT.value, "No signed-in user found in the stored session.")
        return identity
