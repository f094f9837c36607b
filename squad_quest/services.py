import logging

from squad_quest.features.bounty import DailyBounty
from squad_quest.features.leaderboard import Leaderboard
from squad_quest.features.quests import QuestManager
from squad_quest.features.shop import ShopManager
from squad_quest.features.vibe_check import VibeCheck
from squad_quest.features.weekly_reset import WeeklyReset
from squad_quest.utils.time_windows import utcnow

logger = logging.getLogger(__name__)


def build_store(config):
    """Document store selected by STORE_BACKEND."""
    if config.STORE_BACKEND == 'memory':
        from squad_quest.database.memory import InMemoryDocumentStore
        logger.warning("Using the in-memory document store; data is not persisted")
        return InMemoryDocumentStore(max_attempts=config.TRANSACTION_MAX_ATTEMPTS)

    from squad_quest.database.firebase import FirestoreDocumentStore, initialize_firebase
    initialize_firebase(config.FIREBASE_SERVICE_ACCOUNT_KEY)
    return FirestoreDocumentStore(max_attempts=config.TRANSACTION_MAX_ATTEMPTS)


class Services:
    """Every reward procedure, wired to one store, config, notifier and clock."""

    def __init__(self, store, config, notifier=None, clock=None):
        self.store = store
        self.config = config
        self.notifier = notifier
        self.clock = clock or utcnow

        args = (store, config, notifier, self.clock)
        self.bounty = DailyBounty(*args)
        self.quests = QuestManager(*args)
        self.vibe_check = VibeCheck(*args)
        self.shop = ShopManager(*args)
        self.weekly_reset = WeeklyReset(*args)
        self.leaderboard = Leaderboard(store, config, self.weekly_reset)
