"""
Chat name resolution.

Resolution order, first non-empty result wins:

1. name already stored for the chat
2. groups: display name or name from history-sync metadata
3. groups: live group info from the messaging client
4. groups: "Group <local id>"
5. 1:1 chats: contact full name, then the event's sender, then the local id

The result is written back so later calls stop at step 1.
"""

import logging
from typing import Optional

from chatrelay.events import GroupMetadata, MessagingClient
from chatrelay.exceptions import ProtocolError, StoreError
from chatrelay.storage import ChatStore
from chatrelay.utils import JID

logger = logging.getLogger(__name__)


def group_fallback_name(jid: JID) -> str:
    return f"Group {jid.user}"


def _name_from_metadata(metadata: Optional[GroupMetadata]) -> str:
    if metadata is None:
        return ""
    return metadata.display_name or metadata.name or ""


def _group_name(client: MessagingClient, jid: JID, metadata: Optional[GroupMetadata]) -> str:
    name = _name_from_metadata(metadata)
    if name:
        return name

    try:
        info = client.get_group_info(jid)
    except ProtocolError as e:
        logger.warning(f"Group info lookup failed for {jid}: {e}")
        info = None
    if info is not None and info.name:
        return info.name

    return group_fallback_name(jid)


def _contact_name(client: MessagingClient, jid: JID, sender: str) -> str:
    try:
        contact = client.get_contact(jid)
    except ProtocolError as e:
        logger.warning(f"Contact lookup failed for {jid}: {e}")
        contact = None
    if contact is not None and contact.full_name:
        return contact.full_name
    if sender:
        return sender
    return jid.user


def resolve_chat_name(
    client: MessagingClient,
    store: ChatStore,
    jid: JID,
    metadata: Optional[GroupMetadata] = None,
    sender: str = "",
) -> str:
    """
    Determine the display name for a chat and cache it in the store.

    Args:
        client: Messaging client used for group and contact lookups
        store: Local history store, read for the cached name and written back
        jid: Chat identity
        metadata: Group metadata from a history-sync conversation, if any
        sender: Sender already known for the current event

    Returns:
        A non-empty display name.
    """
    chat_jid = str(jid)
    try:
        existing = store.get_chat_name(chat_jid)
    except StoreError as e:
        logger.warning(f"Chat name lookup failed for {chat_jid}: {e}")
        existing = None
    if existing:
        logger.debug(f"Using existing chat name for {chat_jid}: {existing}")
        return existing

    if jid.is_group:
        name = _group_name(client, jid, metadata)
        logger.info(f"Using group name for {chat_jid}: {name}")
    else:
        name = _contact_name(client, jid, sender)
        logger.info(f"Using contact name for {chat_jid}: {name}")

    try:
        store.save_chat_name(chat_jid, name)
    except StoreError as e:
        logger.warning(f"Failed to cache chat name for {chat_jid}: {e}")
    return name
