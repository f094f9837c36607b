import logging
import threading
from datetime import timedelta

import schedule

from squad_quest.database.schemas import ARCHIVED_QUESTS, QUESTS, USERS, UserRecord, user_path
from squad_quest.database.store import chunked
from squad_quest.utils.time_windows import as_datetime, utcnow

logger = logging.getLogger(__name__)


def send_daily_reminders(store, config, notifier, clock=utcnow):
    """Nudge users whose bounty is claimable again, at most once per day."""
    now = clock()
    cutoff = now - timedelta(hours=config.REMINDER_INTERVAL_HOURS)
    snapshots = store.query(USERS, [('last_claimed_at', '<=', cutoff)])

    sent = 0
    for snapshot in snapshots:
        last_notified = as_datetime(snapshot.get('lastDailyNotificationSent'))
        if last_notified and last_notified > cutoff:
            continue
        if not snapshot.get('fcmToken'):
            continue
        if notifier.send(snapshot.id, "Bounty Reset!",
                         f"Your Daily Bounty is ready. Claim your +{config.BOUNTY_RULES['base_xp']} XP now!",
                         {'type': 'daily_bounty'}):
            store.update(user_path(snapshot.id), {'lastDailyNotificationSent': now})
            sent += 1

    logger.info(f"Daily bounty check complete: {sent} reminders sent")
    return sent


def archive_old_quests(store, config, clock=utcnow, dry_run=None):
    """Move completed quests untouched for ARCHIVE_THRESHOLD_DAYS to ``archived_quests``."""
    dry_run = config.ARCHIVER_DRY_RUN if dry_run is None else dry_run
    now = clock()
    cutoff = now - timedelta(days=config.ARCHIVE_THRESHOLD_DAYS)
    snapshots = store.query(QUESTS, [('status', '==', 'completed'), ('updatedAt', '<', cutoff)])

    if not snapshots:
        logger.info("No quests found to archive")
        return {'eligible': 0, 'archived': 0, 'dryRun': dry_run}

    if dry_run:
        for snapshot in snapshots:
            logger.info(f"[dry run] would archive quest {snapshot.id} ({snapshot.get('title', 'Untitled')})")
        return {'eligible': len(snapshots), 'archived': 0, 'dryRun': True}

    archived = 0
    # Two writes per quest: the archive copy and the delete
    for chunk in chunked(snapshots, config.ARCHIVE_BATCH_SIZE // 2):
        batch = store.batch()
        for snapshot in chunk:
            data = snapshot.to_dict()
            data.update({'archivedAt': now, 'originalCollection': QUESTS})
            batch.set(f"{ARCHIVED_QUESTS}/{snapshot.id}", data)
            batch.delete(snapshot.path)
        batch.commit()
        archived += len(chunk)
        logger.info(f"Archive batch committed ({len(chunk)} quests)")

    logger.info(f"Quest archiver finished: {archived} quests archived")
    return {'eligible': len(snapshots), 'archived': archived, 'dryRun': False}


def run_job(name, job, *args, **kwargs):
    try:
        logger.info(f"Starting scheduled job: {name}")
        return job(*args, **kwargs)
    except Exception as e:
        logger.exception(f"Critical error in scheduled job {name}: {str(e)}")


def weekly_reset_if_due(weekly_reset):
    if weekly_reset.is_due():
        return weekly_reset.run_weekly_cycle()
    return None


def register_jobs(services, scheduler=None):
    """Attach the recurring jobs to a ``schedule.Scheduler``."""
    scheduler = scheduler or schedule.Scheduler()
    # The weekly cycle claims its week through the meta marker, so a frequent
    # due-check runs it once, shortly after Monday 00:00 in the configured timezone.
    scheduler.every(10).minutes.do(run_job, 'weekly_reset', weekly_reset_if_due, services.weekly_reset)
    scheduler.every().hour.at(':00').do(
        run_job, 'daily_reminder', send_daily_reminders,
        services.store, services.config, services.notifier, services.clock,
    )
    scheduler.every().day.at('03:00').do(
        run_job, 'quest_archiver', archive_old_quests, services.store, services.config, services.clock,
    )
    return scheduler


def run_scheduler(scheduler, stop_event, interval=30):
    while not stop_event.is_set():
        scheduler.run_pending()
        stop_event.wait(interval)


def start_scheduler_thread(services):
    scheduler = register_jobs(services)
    stop_event = threading.Event()
    thread = threading.Thread(target=run_scheduler, args=(scheduler, stop_event), name='scheduler', daemon=True)
    thread.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")
    return thread, stop_event
