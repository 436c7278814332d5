"""
Chat synchronization client.

A ChatSession presents one live two-party conversation (end user and
support): the ordered message history, typing indicators of the other side
and read receipts. It is built from store calls plus two change-feed
subscriptions scoped to the conversation.

Subscription forwarders only move changes into a private inbox; a single
dispatcher task owned by the session applies them to its state and
republishes what it applied on ``session.updates``. Closing the session
cancels all of these tasks before returning, so no change is applied after
close.

Store calls run in the thread pool; the session itself is only touched
from its event loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from quickloans import repository
from quickloans.errors import PermissionDenied, ProfileIncomplete, QuickLoansError
from quickloans.models import ChatMessage, TypingStatus
from quickloans.object_store import ObjectStore
from quickloans.policies import Identity
from quickloans.realtime import ALL_EVENTS, INSERT, Change, Subscription
from quickloans.storage import Platform, row_to_dict

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
READ = "read"


@dataclass(frozen=True)
class Notification:
    """Short-lived message for the user (toast)."""
    level: str
    text: str


@dataclass(frozen=True)
class StagedAttachment:
    filename: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class ChatEvent:
    """Something the view should render: message, typing or notification."""
    kind: str
    payload: Any


def receipt(message: Dict[str, Any]) -> str:
    """Binary read receipt: each conversation has exactly two sides."""
    return READ if message.get("read_at") else DELIVERED


def _rows(rows) -> List[Dict[str, Any]]:
    return [row_to_dict(row) for row in rows]


def _created_conversation(result) -> Dict[str, Any]:
    conversation, _ = result
    return row_to_dict(conversation)


class ChatSession:
    """One open chat screen for one viewer and at most one conversation."""

    def __init__(self, platform: Platform, identity: Identity, profile=None,
                 idle_seconds: Optional[float] = None, max_attachment_bytes: Optional[int] = None):
        settings = platform.settings
        self._platform = platform
        self.identity = identity
        self.profile = profile
        # Chosen once for the lifetime of the session
        self.acting_as_support = identity.is_admin
        self._idle_seconds = settings.TYPING_IDLE_SECONDS if idle_seconds is None else idle_seconds
        self._max_attachment_bytes = (
            settings.MAX_ATTACHMENT_BYTES if max_attachment_bytes is None else max_attachment_bytes
        )

        self.conversation_id: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self.typing: Dict[str, Dict[str, Any]] = {}
        self.notifications: List[Notification] = []
        self.updates: asyncio.Queue = asyncio.Queue()

        self.draft = ""
        self.attachment: Optional[StagedAttachment] = None
        self.upload_progress = 0.0

        self._typing_flag = False
        self._typing_timer: Optional[asyncio.Task] = None
        self._typing_lock = asyncio.Lock()

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._subscriptions: List[Subscription] = []
        self._forwarders: List[asyncio.Task] = []
        self._dispatcher: Optional[asyncio.Task] = None
        self.closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Resolve the conversation (end users only), load it and go live."""
        self._dispatcher = asyncio.create_task(self._dispatch())

        if self.acting_as_support:
            # Support picks a conversation later with select_conversation()
            return

        try:
            conversation = await self._call(repository.get_or_create_conversation, transform=_created_conversation)
        except QuickLoansError as e:
            self._notify_error("Failed to open conversation", e)
            return
        await self._attach(conversation["id"])

    async def select_conversation(self, conversation_id: str) -> bool:
        """Switch a support session to another conversation."""
        if not self.acting_as_support:
            raise PermissionDenied("Only support staff can switch conversations")

        try:
            conversation = await self._call(repository.get_conversation, conversation_id, transform=row_to_dict)
        except QuickLoansError as e:
            self._notify_error("Failed to open conversation", e)
            return False

        await self._stop_typing()
        self._unsubscribe()
        self.messages = []
        self.typing = {}
        await self._attach(conversation["id"])
        return True

    async def close(self) -> None:
        if self.closed:
            return
        await self._stop_typing()
        self.closed = True

        tasks = list(self._forwarders)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
        for task in tasks:
            task.cancel()
        self._unsubscribe()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._dispatcher = None
        logger.debug(f"Chat session closed for {self.identity.user_id}")

    async def _attach(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        await self._load_history()
        self._subscribe()

    async def _load_history(self) -> None:
        try:
            history = await self._call(repository.list_messages, self.conversation_id, transform=_rows)
        except QuickLoansError as e:
            self._notify_error("Failed to load messages", e)
            return

        self.messages = history
        for message in history:
            if message["read_at"] is None and message["user_id"] != self.identity.user_id:
                await self._mark_read(message["id"])

    def _subscribe(self) -> None:
        feed = self._platform.feed
        subscriptions = [
            feed.subscribe(ChatMessage.__tablename__, (INSERT,), self.conversation_id),
            feed.subscribe(TypingStatus.__tablename__, (ALL_EVENTS,), self.conversation_id),
        ]
        for subscription in subscriptions:
            self._subscriptions.append(subscription)
            self._forwarders.append(asyncio.create_task(self._forward(subscription)))

    def _unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._forwarders:
            task.cancel()
        self._subscriptions = []
        self._forwarders = []

    async def _forward(self, subscription: Subscription) -> None:
        async for change in subscription:
            await self._inbox.put(change)
        # No automatic resubscription; history stays valid
        if not self.closed:
            logger.warning(f"Live updates stopped for {subscription.table} in conversation {self.conversation_id}")

    async def _dispatch(self) -> None:
        while True:
            change = await self._inbox.get()
            try:
                await self._apply(change)
            except Exception:
                logger.exception(f"Failed to apply {change.event} on {change.table}")

    async def _apply(self, change: Change) -> None:
        record = dict(change.record)
        if record.get("conversation_id") != self.conversation_id:
            return

        if change.table == ChatMessage.__tablename__:
            self.messages.append(record)
            self._emit("message", record)
            if record["user_id"] != self.identity.user_id:
                await self._mark_read(record["id"])
        elif change.table == TypingStatus.__tablename__:
            self.typing[record["user_id"]] = record
            self._emit("typing", record)

    # ------------------------------------------------------------------
    # Reading state
    # ------------------------------------------------------------------

    @property
    def someone_typing(self) -> bool:
        """True iff another participant's stored typing flag is set."""
        return any(
            status["is_typing"]
            for user_id, status in self.typing.items()
            if user_id != self.identity.user_id
        )

    @staticmethod
    def receipt(message: Dict[str, Any]) -> str:
        return receipt(message)

    # ------------------------------------------------------------------
    # Compose box
    # ------------------------------------------------------------------

    async def input_changed(self, text: str) -> None:
        """Track the compose input and drive this participant's typing flag."""
        self.draft = text
        if text:
            if not self._typing_flag:
                await self._set_typing(True)
            self._arm_timer()
        else:
            self._disarm_timer()
            await self._set_typing(False)

    async def blur(self) -> None:
        self._disarm_timer()
        await self._set_typing(False)

    def stage_attachment(self, filename: str, content: bytes, content_type: str) -> bool:
        """Stage a file for the next send; files over the size limit are refused."""
        if len(content) > self._max_attachment_bytes:
            limit_mb = self._max_attachment_bytes // (1024 * 1024)
            logger.warning(f"Rejected attachment {filename}: {len(content)} bytes")
            self._notify("error", f"File size must be less than {limit_mb}MB")
            return False
        self.attachment = StagedAttachment(filename=filename, content=content, content_type=content_type)
        self.upload_progress = 0.0
        return True

    def clear_attachment(self) -> None:
        self.attachment = None
        self.upload_progress = 0.0

    async def send(self) -> Optional[Dict[str, Any]]:
        """
        Send the draft and staged attachment as one message.

        Returns the stored message, or None if nothing was sent. On failure
        the draft and attachment are kept and a notification is raised.
        """
        body = self.draft.strip()
        attachment = self.attachment
        if not body and attachment is None:
            return None
        if self.conversation_id is None:
            self._notify("error", "Select a conversation first")
            return None
        if attachment is not None and attachment.size > self._max_attachment_bytes:
            self._notify("error", f"File size must be less than {self._max_attachment_bytes // (1024 * 1024)}MB")
            return None

        attachment_url = None
        attachment_type = None
        try:
            if attachment is not None:
                path = ObjectStore.build_attachment_path(self.identity.user_id, attachment.filename)
                attachment_url = await self._platform.objects.upload(
                    path, attachment.content, attachment.content_type, on_progress=self._on_upload_progress
                )
                attachment_type = attachment.content_type

            message = await self._call(
                repository.create_message,
                self.conversation_id,
                body,
                self.acting_as_support,
                attachment_url,
                attachment_type,
                transform=row_to_dict,
            )
        except QuickLoansError as e:
            if attachment_url is not None:
                # The uploaded object stays behind; nothing reconciles it
                logger.warning(f"Message insert failed after upload; orphaned object {attachment_url}")
            self._notify_error("Failed to send message", e)
            return None

        self.draft = ""
        self.clear_attachment()
        self._disarm_timer()
        if self._typing_flag:
            await self._set_typing(False)
        return message

    def _on_upload_progress(self, loaded: int, total: int) -> None:
        self.upload_progress = 100.0 if total == 0 else loaded * 100.0 / total

    # ------------------------------------------------------------------
    # Typing flag
    # ------------------------------------------------------------------

    def _arm_timer(self) -> None:
        self._disarm_timer()
        self._typing_timer = asyncio.create_task(self._typing_timeout())

    def _disarm_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    async def _typing_timeout(self) -> None:
        await asyncio.sleep(self._idle_seconds)
        self._typing_timer = None
        await self._set_typing(False)

    async def _stop_typing(self) -> None:
        self._disarm_timer()
        if self._typing_flag:
            await self._set_typing(False)

    async def _set_typing(self, is_typing: bool) -> None:
        if self.conversation_id is None or self.closed:
            return
        conversation_id = self.conversation_id
        async with self._typing_lock:
            try:
                await self._call(repository.upsert_typing_status, conversation_id, is_typing, transform=row_to_dict)
            except QuickLoansError as e:
                # Local flag keeps the last stored value
                self._notify_error("Failed to update typing status", e)
                return
            self._typing_flag = is_typing

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _mark_read(self, message_id: int) -> None:
        try:
            updated = await self._call(repository.mark_message_read, message_id, transform=row_to_dict)
        except QuickLoansError as e:
            self._notify_error("Failed to mark message as read", e)
            return
        for message in self.messages:
            if message["id"] == message_id:
                message["read_at"] = updated["read_at"]
                break

    async def _call(self, fn: Callable, *args: Any, transform: Optional[Callable] = None) -> Any:
        """Run a store operation in the thread pool with a fresh session."""
        def work():
            with self._platform.session() as db:
                result = fn(db, self.identity, *args)
                return transform(result) if transform is not None else result

        return await run_in_threadpool(work)

    def _emit(self, kind: str, payload: Any) -> None:
        self.updates.put_nowait(ChatEvent(kind=kind, payload=payload))

    def _notify(self, level: str, text: str) -> None:
        if self.notifications and self.notifications[-1] == Notification(level, text):
            return
        notification = Notification(level=level, text=text)
        self.notifications.append(notification)
        self._emit("notification", notification)

    def _notify_error(self, text: str, error: QuickLoansError) -> None:
        logger.error(f"{text}: {error.message}")
        self._notify("error", f"{text}: {error.message}")


async def open_chat(platform: Platform, user_id: str, **options: Any) -> ChatSession:
    """
    Open a chat session for user_id.

    End users need a profile with a name; they are attached to their active
    conversation, which is created on first use. Support sessions start
    without a conversation.

    Raises:
        ProfileIncomplete: the end user has no usable profile
        StoreError: the caller's identity could not be resolved
    """
    def resolve():
        with platform.session() as db:
            return repository.resolve_identity(db, user_id)

    identity, profile = await run_in_threadpool(resolve)
    if not identity.is_admin and not repository.has_name(profile):
        raise ProfileIncomplete(
            "Please complete your profile information before starting a chat with support"
        )

    session = ChatSession(platform, identity, profile, **options)
    await session.start()
    return session
