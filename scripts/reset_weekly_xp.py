"""Run the weekly leaderboard cycle by hand (rewards + reset)."""
import argparse
import logging

from config import config
from squad_quest.integrations.notifications import NotificationDispatcher
from squad_quest.services import Services, build_store
from squad_quest.utils.logger import setup_logging

logger = logging.getLogger(__name__)

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument('--force', action='store_true', help='run even if this week was already reset')
    args = parser.parse_args()

    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    store = build_store(config)
    notifier = NotificationDispatcher(store, config)
    try:
        result = Services(store, config, notifier).weekly_reset.run_weekly_cycle(force=args.force)
        logger.info(f"Weekly cycle finished: {result}")
    finally:
        notifier.shutdown(wait=True)
