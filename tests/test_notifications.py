import pytest
from firebase_admin import messaging

from squad_quest.database.schemas import user_path
from squad_quest.integrations import notifications
from squad_quest.integrations.notifications import FcmSender, NotificationDispatcher, TokenUnregistered


class FakeSender:
    def __init__(self, failures=0, unregistered=()):
        self.failures = failures
        self.unregistered = set(unregistered)
        self.sent = []

    def send_to_token(self, token, title, body, data=None):
        if token in self.unregistered:
            raise TokenUnregistered(token)
        if self.failures:
            self.failures -= 1
            raise ConnectionError('fcm unavailable')
        self.sent.append((token, title, body, data))
        return 'message-id'

    def send_to_topic(self, topic, title, body, data=None):
        self.sent.append((topic, title, body, data))
        return 'message-id'


@pytest.fixture
def make_dispatcher(store, config):
    dispatchers = []

    def make(sender):
        dispatcher = NotificationDispatcher(store, config, sender=sender)
        dispatchers.append(dispatcher)
        return dispatcher

    yield make
    for dispatcher in dispatchers:
        dispatcher.shutdown()


def test_send_delivers_to_stored_token(make_dispatcher, store):
    store.set(user_path('bob'), {'fcmToken': 'tok-bob'})
    sender = FakeSender()

    assert make_dispatcher(sender).send('bob', 'Hi', 'There', {'type': 'test'}) is True
    assert sender.sent == [('tok-bob', 'Hi', 'There', {'type': 'test'})]


def test_send_without_token_is_skipped(make_dispatcher, store):
    store.set(user_path('bob'), {'name': 'Bob'})
    sender = FakeSender()

    assert make_dispatcher(sender).send('bob', 'Hi', 'There') is False
    assert make_dispatcher(sender).send('ghost', 'Hi', 'There') is False
    assert sender.sent == []


def test_unregistered_token_is_removed(make_dispatcher, store):
    store.set(user_path('bob'), {'name': 'Bob', 'fcmToken': 'stale'})

    assert make_dispatcher(FakeSender(unregistered=['stale'])).send('bob', 'Hi', 'There') is False
    assert store.get(user_path('bob')).to_dict() == {'name': 'Bob'}


def test_transient_failures_are_retried(make_dispatcher, store):
    store.set(user_path('bob'), {'fcmToken': 'tok-bob'})
    sender = FakeSender(failures=2)

    assert make_dispatcher(sender).send('bob', 'Hi', 'There') is True
    assert len(sender.sent) == 1


def test_gives_up_after_max_attempts(make_dispatcher, store):
    store.set(user_path('bob'), {'fcmToken': 'tok-bob'})
    sender = FakeSender(failures=5)

    assert make_dispatcher(sender).send('bob', 'Hi', 'There') is False
    assert sender.failures == 2
    assert store.get(user_path('bob')).get('fcmToken') == 'tok-bob'


def test_dispatch_runs_in_background(make_dispatcher, store):
    store.set(user_path('bob'), {'fcmToken': 'tok-bob'})
    sender = FakeSender()
    dispatcher = make_dispatcher(sender)

    assert dispatcher.dispatch('bob', 'Hi', 'There').result(timeout=5) is True
    assert dispatcher.dispatch_topic('all_users', 'News', 'Body').result(timeout=5) is True
    assert [entry[0] for entry in sender.sent] == ['tok-bob', 'all_users']


def test_fcm_sender_maps_unregistered_error(monkeypatch):
    def fake_send(message):
        raise messaging.UnregisteredError('Requested entity was not found.')

    monkeypatch.setattr(notifications.messaging, 'send', fake_send)

    with pytest.raises(TokenUnregistered):
        FcmSender().send_to_token('stale', 'Hi', 'There', {'level': 3})


def test_fcm_sender_stringifies_data(monkeypatch):
    sent = []
    monkeypatch.setattr(notifications.messaging, 'send', lambda message: sent.append(message) or 'id')

    FcmSender().send_to_token('tok', 'Hi', 'There', {'level': 3})

    assert sent[0].data == {'level': '3'}
    assert sent[0].token == 'tok'
