"""
Chat message delivery for complaint threads and chat rooms

A feed prefers a live Firestore subscription ordered by timestamp. Ordered,
filtered queries need a composite index; until an operator creates it the
feed runs degraded: it re-fetches with a filter-only query, sorts in
Python, and probes for the index on a fixed interval.
"""

import os
import atexit
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter
from .firebase_config import get_firestore_client
from .index_errors import is_missing_index, extract_index_url

logger = logging.getLogger(__name__)

MODE_LIVE = 'live'
MODE_DEGRADED = 'degraded'

DEFAULT_PROBE_SECONDS = 10.0


@dataclass(frozen=True)
class FeedSource:
    """Where a thread's messages live"""
    collection: str
    thread_field: str
    text_field: str


COMPLAINT_CHATS = FeedSource('chats', 'complaintId', 'text')
ROOM_MESSAGES = FeedSource('chatMessages', 'roomId', 'content')


@dataclass
class ChatMessage:
    id: str
    thread_id: str
    text: str
    sender_id: str
    sender_name: str
    sender_role: str
    timestamp: datetime
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    is_read: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, doc, source: FeedSource) -> 'ChatMessage':
        data = doc.to_dict() or {}
        timestamp = data.get('timestamp')
        if not isinstance(timestamp, datetime):
            # Pending server timestamps have no value yet
            timestamp = datetime.now(timezone.utc)
        return cls(
            id=doc.id,
            thread_id=data.get(source.thread_field, ''),
            text=data.get(source.text_field, ''),
            sender_id=data.get('senderId', ''),
            sender_name=data.get('senderName', 'Unknown User'),
            sender_role=data.get('senderRole', 'unknown'),
            timestamp=timestamp,
            attachments=list(data.get('attachments') or []),
            is_read=dict(data.get('isRead') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'threadId': self.thread_id,
            'text': self.text,
            'senderId': self.sender_id,
            'senderName': self.sender_name,
            'senderRole': self.sender_role,
            'timestamp': self.timestamp.isoformat(),
            'attachments': self.attachments,
            'isRead': self.is_read,
        }


def sort_by_timestamp(messages: List[ChatMessage]) -> List[ChatMessage]:
    return sorted(messages, key=lambda m: m.timestamp)


class IndexWatcher(threading.Thread):
    """Re-runs a probe every `interval` seconds until it succeeds once"""

    def __init__(self, probe: Callable[[], bool], on_ready: Callable[[], None], interval: float):
        super().__init__(daemon=True, name='chat-index-watcher')
        self.probe = probe
        self.on_ready = on_ready
        self.interval = interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            if self.probe():
                self._stopped.set()
                self.on_ready()
                return

    def stop(self):
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


class ChatFeed:
    """Message list for one thread as seen by one viewer"""

    def __init__(self, db, source: FeedSource, thread_id: str, viewer_id: str,
                 probe_interval: Optional[float] = None):
        self.db = db
        self.source = source
        self.thread_id = thread_id
        self.viewer_id = viewer_id
        if probe_interval is None:
            probe_interval = float(os.getenv('CHAT_INDEX_PROBE_SECONDS', DEFAULT_PROBE_SECONDS))
        self.probe_interval = probe_interval

        self.mode = MODE_DEGRADED
        self.index_url: Optional[str] = None
        self.loading = True
        self.closed = False
        self._messages: List[ChatMessage] = []
        self._lock = threading.RLock()
        self._watch = None
        self._watcher: Optional[IndexWatcher] = None

    def _collection(self):
        return self.db.collection(self.source.collection)

    def _thread_filter(self):
        return FieldFilter(self.source.thread_field, '==', self.thread_id)

    def _ordered_query(self):
        return self._collection()\
            .where(filter=self._thread_filter())\
            .order_by('timestamp', direction=firestore.Query.ASCENDING)

    def open(self) -> 'ChatFeed':
        """Probe for the index and start delivering messages"""
        if self.probe_index():
            self._start_live()
        else:
            self.fetch_messages()
            self._start_index_watch()
        return self

    def probe_index(self) -> bool:
        """True when the ordered query is served, i.e. the index exists"""
        try:
            self._ordered_query().limit(1).get()
            with self._lock:
                self.index_url = None
            return True
        except Exception as e:
            if is_missing_index(e):
                with self._lock:
                    self.index_url = extract_index_url(e)
                logger.warning(f"Chat index missing for {self.source.collection}, using manual refresh")
            else:
                logger.error(f"Error checking chat index: {str(e)}")
            return False

    def fetch_messages(self) -> List[ChatMessage]:
        """Filter-only fetch sorted in Python; works without the index"""
        try:
            docs = self._collection().where(filter=self._thread_filter()).get()
            messages = sort_by_timestamp([ChatMessage.from_snapshot(doc, self.source) for doc in docs])
            with self._lock:
                self._messages = messages
            return list(messages)
        except Exception as e:
            logger.error(f"Error fetching messages without index: {str(e)}")
            raise
        finally:
            with self._lock:
                self.loading = False

    def refresh(self) -> List[ChatMessage]:
        if self.mode == MODE_LIVE:
            return self.messages()
        return self.fetch_messages()

    def _start_index_watch(self):
        with self._lock:
            if self.closed or self._watcher is not None:
                return
            self._watcher = IndexWatcher(self.probe_index, self._upgrade_to_live, self.probe_interval)
            self._watcher.start()

    def _upgrade_to_live(self):
        with self._lock:
            if self.closed:
                return
            self._watcher = None
        logger.info(f"Chat index available, switching {self.thread_id} to real-time updates")
        try:
            self._start_live()
        except Exception as e:
            logger.error(f"Error switching {self.thread_id} to real-time updates: {str(e)}")

    def _start_live(self):
        with self._lock:
            if self.closed:
                return
        try:
            watch = self._ordered_query().on_snapshot(self._on_snapshot)
        except Exception as e:
            logger.error(f"Error subscribing to {self.source.collection} for {self.thread_id}: {str(e)}")
            # Stay degraded and keep probing
            self._start_index_watch()
            self.fetch_messages()
            return
        with self._lock:
            closed = self.closed
            if not closed:
                self._watch = watch
                self.mode = MODE_LIVE
                self.index_url = None
        # Closed while subscribing
        if closed:
            watch.unsubscribe()

    def _on_snapshot(self, docs, changes, read_time):
        messages = sort_by_timestamp([ChatMessage.from_snapshot(doc, self.source) for doc in docs])
        with self._lock:
            self._messages = messages
            self.loading = False
        self._mark_read(messages)

    def _mark_read(self, messages: List[ChatMessage]):
        for message in messages:
            if message.sender_id != self.viewer_id and not message.is_read.get(self.viewer_id):
                try:
                    self._collection().document(message.id).update({f'isRead.{self.viewer_id}': True})
                except Exception as e:
                    logger.warning(f"Could not mark message {message.id} as read: {str(e)}")

    def messages(self) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages)

    def send(self, sender: Dict[str, Any], text: str,
             attachments: Optional[List[Dict[str, Any]]] = None) -> str:
        """Append a message to the thread and return its id"""
        payload = {
            self.source.thread_field: self.thread_id,
            self.source.text_field: text.strip(),
            'senderId': self.viewer_id,
            'senderName': sender.get('username') or 'Unknown User',
            'senderRole': sender.get('role') or 'unknown',
            'timestamp': firestore.SERVER_TIMESTAMP,
            'isRead': {self.viewer_id: True},
        }
        if attachments is not None:
            payload['attachments'] = attachments

        _, message_ref = self._collection().add(payload)

        # Nothing pushes the new message to us without a subscription
        if self.mode != MODE_LIVE:
            try:
                self.fetch_messages()
            except Exception as e:
                logger.warning(f"Message {message_ref.id} stored but the list could not be reloaded: {str(e)}")
        return message_ref.id

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'mode': self.mode,
                'realtime': self.mode == MODE_LIVE,
                'index_url': self.index_url,
                'loading': self.loading,
            }

    def close(self):
        with self._lock:
            self.closed = True
            watch, self._watch = self._watch, None
            watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.stop()
        if watch is not None:
            watch.unsubscribe()


class ChatFeedRegistry:
    """Keeps one open feed per (collection, thread, viewer)"""

    def __init__(self, db_factory: Callable[[], Any], probe_interval: Optional[float] = None):
        self._db_factory = db_factory
        self.probe_interval = probe_interval
        self._feeds: Dict[Tuple[str, str, str], ChatFeed] = {}
        self._lock = threading.Lock()

    def open_feed(self, source: FeedSource, thread_id: str, viewer_id: str) -> ChatFeed:
        key = (source.collection, thread_id, viewer_id)
        with self._lock:
            feed = self._feeds.get(key)
            if feed is not None:
                return feed
            feed = ChatFeed(self._db_factory(), source, thread_id, viewer_id, self.probe_interval)
            self._feeds[key] = feed
        try:
            return feed.open()
        except Exception:
            self.close_feed(source, thread_id, viewer_id)
            raise

    def get_feed(self, source: FeedSource, thread_id: str, viewer_id: str) -> Optional[ChatFeed]:
        with self._lock:
            return self._feeds.get((source.collection, thread_id, viewer_id))

    def close_feed(self, source: FeedSource, thread_id: str, viewer_id: str) -> bool:
        with self._lock:
            feed = self._feeds.pop((source.collection, thread_id, viewer_id), None)
        if feed is None:
            return False
        feed.close()
        return True

    def close_thread(self, source: FeedSource, thread_id: str) -> int:
        with self._lock:
            keys = [k for k in self._feeds if k[0] == source.collection and k[1] == thread_id]
            feeds = [self._feeds.pop(k) for k in keys]
        for feed in feeds:
            feed.close()
        return len(feeds)

    def close_all(self):
        with self._lock:
            feeds = list(self._feeds.values())
            self._feeds.clear()
        for feed in feeds:
            feed.close()


# Global instance
_feed_registry = None

def get_feed_registry():
    """Get the global chat feed registry"""
    global _feed_registry
    if _feed_registry is None:
        _feed_registry = ChatFeedRegistry(get_firestore_client)
        atexit.register(_feed_registry.close_all)
    return _feed_registry
