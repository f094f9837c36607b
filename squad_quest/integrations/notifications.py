import logging
from concurrent.futures import ThreadPoolExecutor

from firebase_admin import messaging
from tenacity import Retrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from squad_quest.database.schemas import user_path
from squad_quest.database.store import DELETE_FIELD

logger = logging.getLogger(__name__)


class TokenUnregistered(Exception):
    """The delivery token is no longer valid and should be forgotten."""
    pass


def _string_data(data):
    # FCM data payloads only carry strings
    return {str(key): str(value) for key, value in (data or {}).items()}


class FcmSender:
    """Firebase Cloud Messaging transport."""

    def send_to_token(self, token, title, body, data=None):
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data=_string_data(data),
            token=token,
        )
        try:
            return messaging.send(message)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            raise TokenUnregistered(str(e)) from e

    def send_to_topic(self, topic, title, body, data=None):
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data=_string_data(data),
            topic=topic,
        )
        return messaging.send(message)


class NotificationDispatcher:
    """Best-effort push delivery; every failure is logged, none is raised to callers."""

    def __init__(self, store, config, sender=None):
        self.store = store
        self.config = config
        self.sender = sender or FcmSender()
        self.executor = ThreadPoolExecutor(
            max_workers=config.NOTIFICATION_WORKERS, thread_name_prefix='notify',
        )

    def _retrying(self):
        return Retrying(
            stop=stop_after_attempt(self.config.NOTIFICATION_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=self.config.NOTIFICATION_RETRY_WAIT, max=10),
            retry=retry_if_not_exception_type(TokenUnregistered),
            reraise=True,
        )

    def _token_for(self, user_id):
        snapshot = self.store.get(user_path(user_id))
        return snapshot.get('fcmToken') if snapshot.exists else None

    def send(self, user_id, title, body, data=None) -> bool:
        """Deliver to one user's device; drops the stored token when FCM rejects it."""
        token = self._token_for(user_id)
        if not token:
            logger.debug(f"No FCM token for user {user_id}, skipping notification")
            return False
        try:
            for attempt in self._retrying():
                with attempt:
                    self.sender.send_to_token(token, title, body, data)
        except TokenUnregistered:
            logger.warning(f"Stale FCM token for user {user_id}, removing it")
            self.store.update(user_path(user_id), {'fcmToken': DELETE_FIELD})
            return False
        except Exception as e:
            logger.error(f"Notification to {user_id} failed: {e}")
            return False
        logger.info(f"Notification sent to {user_id}: {title}")
        return True

    def send_topic(self, topic, title, body, data=None) -> bool:
        try:
            for attempt in self._retrying():
                with attempt:
                    self.sender.send_to_topic(topic, title, body, data)
        except Exception as e:
            logger.error(f"Topic notification to {topic} failed: {e}")
            return False
        logger.info(f"Topic notification sent to {topic}: {title}")
        return True

    def _send_safely(self, fn, *args):
        try:
            return fn(*args)
        except Exception:
            logger.exception("Unexpected notification failure")
            return False

    def dispatch(self, user_id, title, body, data=None):
        """Queue a send without waiting for it."""
        return self.executor.submit(self._send_safely, self.send, user_id, title, body, data)

    def dispatch_topic(self, topic, title, body, data=None):
        return self.executor.submit(self._send_safely, self.send_topic, topic, title, body, data)

    def shutdown(self, wait=True):
        self.executor.shutdown(wait=wait)
