"""One-off migration: give every user a lifetimeXP of wallet + shop spend."""
import logging

from config import config
from squad_quest.services import build_store
from squad_quest.tasks.migration import backfill_lifetime_xp
from squad_quest.utils.logger import setup_logging

logger = logging.getLogger(__name__)

if __name__ == '__main__':
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    summary = backfill_lifetime_xp(build_store(config), config)
    logger.info(f"Migration finished: {summary}")
