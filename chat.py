"""
Customer support chat

A thread is every message sharing a customer id. Messages are append-only;
the only mutation is flipping `is_read`. Live viewers get INSERT/UPDATE events
through `ChatBroker`, one `Subscription` per open thread view. Delivery to
viewers is at-least-once, so consumers keep a `Transcript` which
de-duplicates by message id.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Literal, Optional, Set

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import now, parse_document
from errors import ValidationError
from schemas import ChatMessage, ChatThread

logger = logging.getLogger(__name__)

THREAD_PAGE_SIZE = 20


class ChatEvent(BaseModel):
    type: Literal["INSERT", "UPDATE"]
    message: ChatMessage


_CLOSED = object()


class Subscription:
    """Async iterator over one thread's events. Must be created inside a running loop."""

    def __init__(self, broker: "ChatBroker", customer_id: str):
        self.customer_id = customer_id
        self._broker = broker
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, event: ChatEvent) -> None:
        if self.closed:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker.unsubscribe(self)
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)
        except RuntimeError:
            # loop already shut down, nobody is waiting
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChatEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self.closed:
            raise StopAsyncIteration
        return item


class ChatBroker:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, customer_id: str) -> Subscription:
        subscription = Subscription(self, customer_id)
        with self._lock:
            self._subscribers[customer_id].add(subscription)
        logger.debug("Subscribed to chat thread %s", customer_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.customer_id)
            if subs is not None:
                subs.discard(subscription)
                if not subs:
                    del self._subscribers[subscription.customer_id]
        logger.debug("Unsubscribed from chat thread %s", subscription.customer_id)

    def subscriber_count(self, customer_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(customer_id, ()))

    def publish(self, customer_id: str, event: ChatEvent) -> None:
        with self._lock:
            subs = list(self._subscribers.get(customer_id, ()))
        for subscription in subs:
            try:
                subscription.deliver(event)
            except RuntimeError:
                logger.warning("Dropping chat subscriber for %s, its event loop is closed", customer_id)
                subscription.close()


broker = ChatBroker()


def get_broker() -> ChatBroker:
    return broker


class Transcript:
    """Local copy of a thread, safe against duplicate or replayed events."""

    def __init__(self, messages: Optional[List[ChatMessage]] = None):
        self.messages: List[ChatMessage] = []
        for message in messages or []:
            self.apply(ChatEvent(type="INSERT", message=message))

    def apply(self, event: ChatEvent) -> bool:
        """Returns True if the transcript changed."""
        message = event.message
        for index, held in enumerate(self.messages):
            if held.id == message.id:
                if held == message:
                    return False
                self.messages[index] = message
                return True
        if event.type == "UPDATE":
            return False
        self.messages.append(message)
        return True

    def ids(self) -> List[str]:
        return [m.id for m in self.messages]


class ChatRelay:
    def __init__(self, db: Database, broker: ChatBroker):
        self.db = db
        self.broker = broker

    def post_message(self, customer_id: str, sender_id: str, sender_role: str, content: str) -> ChatMessage:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        message = ChatMessage(
            customer_id=customer_id,
            sender_id=sender_id,
            sender_role=sender_role,
            content=text,
            is_read=False,
            created_at=now(),
        )
        result = self.db["chat_message"].insert_one(message.model_dump(exclude={"id"}))
        message.id = str(result.inserted_id)
        # $max keeps the newest time when concurrent posts land out of order
        try:
            self.db["chat_thread"].update_one(
                {"_id": customer_id},
                {"$max": {"last_message_at": message.created_at}},
                upsert=True,
            )
        except PyMongoError as e:
            # the message is stored, the next post repairs the view
            logger.error("Thread view update failed for %s: %s", customer_id, e)
        self.broker.publish(customer_id, ChatEvent(type="INSERT", message=message))
        return message

    def list_messages(self, customer_id: str) -> List[ChatMessage]:
        cursor = self.db["chat_message"].find({"customer_id": customer_id}).sort("created_at", ASCENDING)
        return [parse_document(ChatMessage, d) for d in cursor]

    def mark_read(self, customer_id: str, reader_role: str) -> int:
        query = {"customer_id": customer_id, "is_read": False, "sender_role": {"$ne": reader_role}}
        ids = [d["_id"] for d in self.db["chat_message"].find(query, {"_id": 1})]
        if not ids:
            return 0
        self.db["chat_message"].update_many({"_id": {"$in": ids}}, {"$set": {"is_read": True}})
        for doc in self.db["chat_message"].find({"_id": {"$in": ids}}).sort("created_at", ASCENDING):
            self.broker.publish(customer_id, ChatEvent(type="UPDATE", message=parse_document(ChatMessage, doc)))
        return len(ids)

    def subscribe(self, customer_id: str) -> Subscription:
        return self.broker.subscribe(customer_id)

    def list_threads(self, page: int = 1) -> Dict[str, Any]:
        page = max(page, 1)
        try:
            rows, total = self._threads_from_view(page)
        except PyMongoError as e:
            logger.warning("chat_thread view unavailable, scanning messages: %s", e)
            rows, total = self._threads_from_messages(page)

        users = self._users([r["customer_id"] for r in rows])
        threads = []
        for row in rows:
            user = users.get(row["customer_id"], {})
            threads.append(ChatThread(
                customer_id=row["customer_id"],
                customer_name=user.get("full_name"),
                customer_email=user.get("email"),
                last_message_at=row.get("last_message_at"),
                unread_count=self.unread_count(row["customer_id"]),
            ))
        return {"items": threads, "page": page, "page_size": THREAD_PAGE_SIZE, "total": total}

    def unread_count(self, customer_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"is_read": False, "sender_role": {"$ne": "admin"}}
        if customer_id is not None:
            query["customer_id"] = customer_id
        return self.db["chat_message"].count_documents(query)

    def _threads_from_view(self, page: int):
        total = self.db["chat_thread"].count_documents({})
        cursor = (self.db["chat_thread"].find({})
                  .sort("last_message_at", DESCENDING)
                  .skip((page - 1) * THREAD_PAGE_SIZE)
                  .limit(THREAD_PAGE_SIZE))
        rows = [{"customer_id": d["_id"], "last_message_at": d.get("last_message_at")} for d in cursor]
        return rows, total

    def _threads_from_messages(self, page: int):
        seen: Dict[str, Any] = {}
        cursor = self.db["chat_message"].find({}, {"customer_id": 1, "created_at": 1}).sort("created_at", DESCENDING)
        for doc in cursor:
            if doc["customer_id"] not in seen:
                seen[doc["customer_id"]] = doc.get("created_at")
        ordered = [{"customer_id": cid, "last_message_at": at} for cid, at in seen.items()]
        start = (page - 1) * THREAD_PAGE_SIZE
        return ordered[start:start + THREAD_PAGE_SIZE], len(ordered)

    def _users(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        object_ids = []
        for i in ids:
            try:
                object_ids.append(ObjectId(i))
            except InvalidId:
                continue
        if not object_ids:
            return {}
        return {str(u["_id"]): u for u in self.db["user"].find({"_id": {"$in": object_ids}}, {"full_name": 1, "email": 1})}
