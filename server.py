import atexit
import logging

from app import create_app
from config import config
from squad_quest.tasks.scheduled import start_scheduler_thread
from squad_quest.utils.logger import setup_logging

setup_logging(config.LOG_LEVEL, config.LOG_FILE)
logger = logging.getLogger(__name__)

config.log_config_summary()
app = create_app(config)
services = app.extensions['squad_quest']

if config.ENABLE_SCHEDULER:
    _, scheduler_stop = start_scheduler_thread(services)
    atexit.register(scheduler_stop.set)


def shutdown():
    """Graceful shutdown"""
    logger.info("Shutting down SquadQuest reward service")
    services.notifier.shutdown(wait=True)


atexit.register(shutdown)

if __name__ == '__main__':
    debug_mode = config.ENV != 'production'
    logger.info(f"Starting SquadQuest reward service on port {config.PORT}, debug={debug_mode}")
    app.run(host='0.0.0.0', port=config.PORT, debug=debug_mode, use_reloader=False)
