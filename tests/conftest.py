from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from config import Config
from squad_quest.database.memory import InMemoryDocumentStore
from squad_quest.database.schemas import member_path, quest_path, stats_path, user_path
from squad_quest.services import Services

# Wednesday; the week started Monday 2026-03-09 00:00 UTC
NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)
ADMIN_SECRET = 'test-admin-secret'


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Stands in for NotificationDispatcher and keeps every queued message."""

    def __init__(self):
        self.messages = []
        self.topics = []

    def dispatch(self, user_id, title, body, data=None):
        self.messages.append({'user_id': user_id, 'title': title, 'body': body, 'data': data or {}})

    def dispatch_topic(self, topic, title, body, data=None):
        self.topics.append({'topic': topic, 'title': title, 'body': body, 'data': data or {}})

    def send(self, user_id, title, body, data=None):
        self.dispatch(user_id, title, body, data)
        return True

    def shutdown(self, wait=True):
        pass

    def titles_for(self, user_id):
        return [m['title'] for m in self.messages if m['user_id'] == user_id]


@pytest.fixture
def config():
    return Config(
        ENV='test',
        STORE_BACKEND='memory',
        ADMIN_SECRET=ADMIN_SECRET,
        TIMEZONE='UTC',
        DEFAULT_CITY=None,
        NOTIFICATION_RETRY_WAIT=0,
        TRANSACTION_MAX_ATTEMPTS=20,
    )


@pytest.fixture
def store():
    return InMemoryDocumentStore(max_attempts=20)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(store, config, notifier, clock):
    return Services(store, config, notifier, clock)


@pytest.fixture
def seed_user(store, clock):
    """Write a consistent users/userStats pair for ``uid``."""
    def seed(uid, **fields):
        data = {
            'name': uid.capitalize(),
            'xp': 0,
            'lifetimeXP': fields.get('xp', 0),
            'thisWeekXP': 0,
            'level': 1,
            'reliabilityScore': 0,
            'questsCompleted': 0,
            'daily_streak': 0,
            'badges': [],
            'lastWeeklyResetDate': clock.now,
        }
        data.update(fields)
        store.set(user_path(uid), dict(data))
        store.set(stats_path(uid), dict(data))
        return data
    return seed


@pytest.fixture
def seed_quest(store, clock):
    """Write a quest document plus member documents for ``members``."""
    def seed(quest_id, host_id, members=(), **fields):
        member_ids = [host_id] + [m for m in members if m != host_id]
        data = {
            'id': quest_id,
            'title': f"Quest {quest_id}",
            'hostId': host_id,
            'status': 'open',
            'maxPlayers': 4,
            'membersCount': len(member_ids),
            'members': list(member_ids),
            'difficulty': 1,
            'isPrivate': False,
            'hotZoneNotified': False,
            'createdAt': clock.now,
            'updatedAt': clock.now,
        }
        data.update(fields)
        store.set(quest_path(quest_id), data)
        for uid in member_ids:
            store.set(member_path(quest_id, uid), {
                'uid': uid, 'name': uid.capitalize(), 'joinedAt': clock.now,
                'role': 'host' if uid == host_id else 'member',
            })
        return data
    return seed


def fake_verifier(token):
    if token.startswith('bad'):
        raise ValueError('invalid token')
    return {'uid': token, 'name': token.capitalize()}


@pytest.fixture
def app(store, config, notifier, clock):
    app = create_app(config, store=store, notifier=notifier, token_verifier=fake_verifier, clock=clock)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def auth(uid):
    return {'Authorization': f"Bearer {uid}"}


def both_docs(store, uid):
    return store.get(user_path(uid)).to_dict(), store.get(stats_path(uid)).to_dict()
