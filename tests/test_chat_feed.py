"""
Chat feed delivery: live subscription, degraded fallback and index watching
"""
import threading
import time
from datetime import datetime, timezone
import pytest

from utils.chat_feed import (
    COMPLAINT_CHATS, ROOM_MESSAGES, MODE_DEGRADED, MODE_LIVE,
    ChatFeed, ChatFeedRegistry, IndexWatcher,
)
from utils.index_errors import FIREBASE_CONSOLE_URL
from tests.mocks.fake_firebase import INDEX_ERROR_URL

SENDER = {'username': 'alice', 'role': 'student'}


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def seed_message(db, doc_id, thread_id, text, minute, sender_id='faculty1', **extra):
    data = {
        'complaintId': thread_id,
        'text': text,
        'senderId': sender_id,
        'senderName': 'bob',
        'senderRole': 'faculty',
        'timestamp': datetime(2024, 1, 1, 8, minute, tzinfo=timezone.utc),
        'isRead': {sender_id: True},
    }
    data.update(extra)
    db.seed('chats', doc_id, data)


def open_feed(db, thread_id='c1', viewer='student1'):
    return ChatFeed(db, COMPLAINT_CHATS, thread_id, viewer, probe_interval=0.05).open()


class TestDegradedMode:
    def test_missing_index_switches_to_manual_refresh(self, fake_db):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            status = feed.status()
            assert status['mode'] == MODE_DEGRADED
            assert status['realtime'] is False
            assert status['loading'] is False
            assert status['index_url'] == INDEX_ERROR_URL
        finally:
            feed.close()

    def test_generic_console_link_when_error_has_no_url(self, fake_db):
        fake_db.indexes_ready = False
        fake_db.index_error_message = 'The query requires an index.'
        feed = open_feed(fake_db)
        try:
            assert feed.index_url == FIREBASE_CONSOLE_URL
        finally:
            feed.close()

    def test_messages_sorted_without_index(self, fake_db):
        fake_db.indexes_ready = False
        seed_message(fake_db, 'm1', 'c1', 'third', 30)
        seed_message(fake_db, 'm2', 'c1', 'first', 10)
        seed_message(fake_db, 'm3', 'c1', 'second', 20)
        seed_message(fake_db, 'm4', 'other', 'not mine', 15)

        feed = open_feed(fake_db)
        try:
            assert [m.text for m in feed.messages()] == ['first', 'second', 'third']
        finally:
            feed.close()

    def test_sent_message_visible_after_send(self, fake_db):
        fake_db.indexes_ready = False
        seed_message(fake_db, 'm1', 'c1', 'hello', 10)
        feed = open_feed(fake_db)
        try:
            message_id = feed.send(SENDER, '  Any update?  ')
            messages = feed.messages()
            assert [m.text for m in messages] == ['hello', 'Any update?']
            assert messages[-1].id == message_id
            assert messages[-1].sender_id == 'student1'
            assert messages[-1].is_read == {'student1': True}
            assert feed.mode == MODE_DEGRADED
        finally:
            feed.close()

    def test_refresh_picks_up_messages_from_others(self, fake_db):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            assert feed.messages() == []
            seed_message(fake_db, 'm1', 'c1', 'new reply', 10)
            assert [m.text for m in feed.refresh()] == ['new reply']
        finally:
            feed.close()

    def test_other_probe_errors_do_not_set_index_url(self, fake_db, monkeypatch):
        feed = ChatFeed(fake_db, COMPLAINT_CHATS, 'c1', 'student1', probe_interval=0.05)

        def broken_query():
            raise RuntimeError('network down')

        monkeypatch.setattr(feed, '_ordered_query', broken_query)
        assert feed.probe_index() is False
        assert feed.index_url is None

    def test_failed_reload_after_send_still_returns_id(self, fake_db, monkeypatch):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            def reload_fails():
                raise RuntimeError('deadline exceeded')

            monkeypatch.setattr(feed, 'fetch_messages', reload_fails)
            message_id = feed.send(SENDER, 'Any update?')

            assert fake_db.docs('chats')[message_id]['text'] == 'Any update?'
        finally:
            feed.close()


class FlakySubscription:
    """Wraps a query so the first `failures` subscriptions raise"""

    def __init__(self, query, attempts, failures):
        self.query = query
        self.attempts = attempts
        self.failures = failures

    def limit(self, count):
        return self.query.limit(count)

    def on_snapshot(self, callback):
        self.attempts.append(1)
        if len(self.attempts) <= self.failures:
            raise RuntimeError('listen stream closed')
        return self.query.on_snapshot(callback)


class TestIndexWatcher:
    def test_stays_degraded_when_subscribe_fails(self, fake_db, monkeypatch):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            real_query = feed._ordered_query
            attempts = []
            monkeypatch.setattr(feed, '_ordered_query',
                                lambda: FlakySubscription(real_query(), attempts, failures=1000))
            fake_db.indexes_ready = True

            assert wait_for(lambda: len(attempts) >= 2)
            status = feed.status()
            assert status['mode'] == MODE_DEGRADED
            assert status['realtime'] is False
            assert feed._watch is None
            assert wait_for(lambda: feed._watcher is not None)

            seed_message(fake_db, 'm1', 'c1', 'hello', 10)
            assert [m.text for m in feed.refresh()] == ['hello']
        finally:
            feed.close()

    def test_retries_subscription_after_failure(self, fake_db, monkeypatch):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            real_query = feed._ordered_query
            attempts = []
            monkeypatch.setattr(feed, '_ordered_query',
                                lambda: FlakySubscription(real_query(), attempts, failures=1))
            seed_message(fake_db, 'm1', 'c1', 'hello', 10)
            fake_db.indexes_ready = True

            assert wait_for(lambda: feed.mode == MODE_LIVE)
            assert len(attempts) == 2
            assert wait_for(lambda: [m.text for m in feed.messages()] == ['hello'])
        finally:
            feed.close()

    def test_upgrades_to_live_once_index_exists(self, fake_db):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        try:
            watcher = feed._watcher
            assert watcher is not None and watcher.is_alive()

            seed_message(fake_db, 'm1', 'c1', 'hello', 10)
            fake_db.indexes_ready = True

            assert wait_for(lambda: feed.mode == MODE_LIVE)
            assert wait_for(lambda: [m.text for m in feed.messages()] == ['hello'])
            assert watcher.stopped
            watcher.join(timeout=1)
            assert not watcher.is_alive()
            assert feed.index_url is None
        finally:
            feed.close()

    def test_stops_after_first_success(self):
        calls = []
        ready = threading.Event()

        def probe():
            calls.append(1)
            return len(calls) >= 3

        watcher = IndexWatcher(probe, ready.set, interval=0.01)
        watcher.start()
        assert ready.wait(timeout=2)
        watcher.join(timeout=1)

        assert not watcher.is_alive()
        assert watcher.stopped
        time.sleep(0.05)
        assert len(calls) == 3

    def test_close_stops_watcher(self, fake_db):
        fake_db.indexes_ready = False
        feed = open_feed(fake_db)
        watcher = feed._watcher
        feed.close()
        watcher.join(timeout=1)

        assert not watcher.is_alive()
        fake_db.indexes_ready = True
        time.sleep(0.15)
        assert feed.mode == MODE_DEGRADED
        assert fake_db.watches == []


class TestLiveMode:
    def test_live_feed_receives_messages(self, fake_db):
        feed = open_feed(fake_db)
        try:
            assert feed.status()['realtime'] is True
            assert len(fake_db.watches) == 1

            seed_message(fake_db, 'm1', 'c1', 'first', 10)
            feed.send(SENDER, 'reply')
            assert [m.text for m in feed.messages()] == ['first', 'reply']
        finally:
            feed.close()
        assert fake_db.watches == []

    def test_live_snapshot_is_sorted(self, fake_db):
        seed_message(fake_db, 'm1', 'c1', 'b', 20)
        seed_message(fake_db, 'm2', 'c1', 'a', 10)
        feed = open_feed(fake_db)
        try:
            timestamps = [m.timestamp for m in feed.messages()]
            assert timestamps == sorted(timestamps)
            assert [m.text for m in feed.messages()] == ['a', 'b']
        finally:
            feed.close()

    def test_marks_other_senders_messages_read(self, fake_db):
        seed_message(fake_db, 'm1', 'c1', 'from faculty', 10)
        seed_message(fake_db, 'm2', 'c1', 'from me', 11, sender_id='student1')
        feed = open_feed(fake_db, viewer='student1')
        try:
            chats = fake_db.docs('chats')
            assert chats['m1']['isRead'] == {'faculty1': True, 'student1': True}
            assert chats['m2']['isRead'] == {'student1': True}
        finally:
            feed.close()

    def test_room_messages_use_content_field(self, fake_db):
        feed = ChatFeed(fake_db, ROOM_MESSAGES, 'room1', 'student1', probe_interval=0.05).open()
        try:
            attachment = {'name': 'photo.png', 'url': 'https://example.test/photo.png', 'type': 'image/png', 'size': 3}
            feed.send(SENDER, 'see attached', attachments=[attachment])
            stored = list(fake_db.docs('chatMessages').values())[0]
            assert stored['roomId'] == 'room1'
            assert stored['content'] == 'see attached'
            assert stored['attachments'] == [attachment]

            message = feed.messages()[0].to_dict()
            assert message['text'] == 'see attached'
            assert message['threadId'] == 'room1'
            assert message['senderName'] == 'alice'
        finally:
            feed.close()


class TestRegistry:
    def test_reuses_feed_per_viewer(self, fake_db):
        registry = ChatFeedRegistry(lambda: fake_db, probe_interval=0.05)
        try:
            first = registry.open_feed(COMPLAINT_CHATS, 'c1', 'student1')
            again = registry.open_feed(COMPLAINT_CHATS, 'c1', 'student1')
            other = registry.open_feed(COMPLAINT_CHATS, 'c1', 'faculty1')
            assert first is again
            assert other is not first
            assert registry.get_feed(COMPLAINT_CHATS, 'c1', 'faculty1') is other
        finally:
            registry.close_all()

    def test_close_thread_closes_every_viewer(self, fake_db):
        registry = ChatFeedRegistry(lambda: fake_db, probe_interval=0.05)
        registry.open_feed(COMPLAINT_CHATS, 'c1', 'student1')
        registry.open_feed(COMPLAINT_CHATS, 'c1', 'faculty1')
        registry.open_feed(COMPLAINT_CHATS, 'c2', 'student1')

        assert registry.close_thread(COMPLAINT_CHATS, 'c1') == 2
        assert registry.get_feed(COMPLAINT_CHATS, 'c1', 'student1') is None
        assert registry.get_feed(COMPLAINT_CHATS, 'c2', 'student1') is not None
        assert registry.close_feed(COMPLAINT_CHATS, 'c2', 'student1') is True
        assert registry.close_feed(COMPLAINT_CHATS, 'c2', 'student1') is False
        assert fake_db.watches == []
