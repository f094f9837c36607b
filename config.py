# config.py
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BOUNTY_RULES = {
    'base_xp': 50,
    'streak_bonus_xp': 25,
    'streak_bonus_after': 5,  # bonus applies when the new streak is above this
    'cooldown_hours': 25,
    'streak_break_hours': 48,
}

QUEST_RULES = {
    'base_xp': 100,
    'punctuality_bonus': 25,
    'punctuality_early_minutes': 15,
    'punctuality_late_minutes': 5,
    'photo_bonus': 20,
    'photo_min_length': 10,
    'host_bonus': 20,
    'showdown_multiplier': 2,
    'showdown_weekday': 6,  # Sunday
    'showdown_start_hour': 21,
    'boost_multiplier': 2,
    'hot_zone_ratio': 0.75,
    'reliability_on_complete': 1,
}

LEAVE_RULES = {
    'grace_hours': 1,
    'penalty_rate': 0.02,
    'min_penalty': 1,
    'reliability_penalty': 5,
}

VIBE_RULES = {
    'tag_xp': 5,
    'reviewer_xp': 50,
    'badge_threshold': 5,
    'badges': {
        'leader': 'SQUAD_LEADER',
        'storyteller': 'MASTER_STORYTELLER',
        'funny': 'ICEBREAKER',
        'listener': 'EMPATHETIC_SOUL',
        'teamplayer': 'TEAM_PLAYER',
        'intellectual': 'PHILOSOPHER',
    },
}

QUEST_BADGES = {
    'first_completion': 'FIRST_MISSION',
    # bonus category -> badge
    'bonuses': {'PUNCTUALITY': 'EARLY_BIRD'},
}

WEEKLY_REWARDS = {
    1: {'xp': 500, 'border': 'champion_aura', 'badge': 'WEEKLY_CHAMPION',
        'buff': {'type': 'CHAMPION_BUFF', 'multiplier': 1.5, 'days': 7}},
    2: {'xp': 300, 'border': 'silver_aura', 'badge': 'WEEKLY_RUNNER_UP'},
    3: {'xp': 150, 'border': 'bronze_aura', 'badge': 'WEEKLY_CONTENDER'},
}

THREAT_LEVEL_REQUIREMENTS = {1: 0, 2: 10, 3: 25, 4: 40, 5: 50}

PROTECTED_QUEST_FIELDS = ('members', 'membersCount', 'completedBy', 'createdAt', 'hostId', 'id')

SHOP_ITEMS = {
    # Real-world vouchers, fulfilled from coupon_codes
    'amazon_in_100': {'name': 'Amazon ₹100', 'type': 'voucher', 'cost': 10000, 'category': 'real-world',
                      'description': 'Shopping voucher for Amazon India.'},
    'starbucks_in_250': {'name': 'Starbucks ₹250', 'type': 'voucher', 'cost': 25000, 'category': 'real-world',
                         'description': 'Coffee voucher valid at Starbucks India.'},
    'zomato_pro': {'name': 'Zomato Gold (1 Mo)', 'type': 'voucher', 'cost': 15000, 'category': 'real-world',
                   'description': 'Free delivery & discounts.'},
    'bookmyshow_200': {'name': 'Movie Ticket ₹200', 'type': 'voucher', 'cost': 20000, 'category': 'real-world',
                       'description': 'Catch the latest Bollywood/Hollywood hit.'},

    # Power-ups
    'streak_freeze': {'name': 'Streak Freeze', 'type': 'consumable', 'cost': 500, 'category': 'powerup',
                      'inventoryKey': 'streak_freeze', 'description': 'Missed a day? Keep your streak alive.'},
    'xp_boost_2x': {'name': 'Neuro-Boost (2x)', 'type': 'consumable', 'cost': 1500, 'category': 'powerup',
                    'inventoryKey': 'xp_boost_2x', 'description': 'Double XP on your NEXT completed quest.'},

    # Cosmetics
    'neon_frame_01': {'name': 'Cyberpunk Neon', 'type': 'cosmetic', 'cost': 2500, 'category': 'cosmetic',
                      'inventoryKey': 'frames', 'description': 'A glowing neon border.'},
    'gold_aura': {'name': 'Midas Touch', 'type': 'cosmetic', 'cost': 5000, 'category': 'cosmetic',
                  'inventoryKey': 'frames', 'description': 'Legendary gold shimmer.'},
    'fire_aura': {'name': 'Inferno', 'type': 'cosmetic', 'cost': 4000, 'category': 'cosmetic',
                  'inventoryKey': 'frames', 'description': 'Animated fire effect.'},

    # Badges
    'badge_whale': {'name': 'The Whale', 'type': 'badge', 'cost': 50000, 'category': 'badge',
                    'description': 'Flex your wealth.'},
    'badge_coffee': {'name': 'Caffeine Club', 'type': 'badge', 'cost': 2000, 'category': 'badge',
                     'description': 'Certified coffee addict.'},
    'badge_dev': {'name': 'Code Wizard', 'type': 'badge', 'cost': 3000, 'category': 'badge',
                  'description': 'For the builders.'},
}

VOUCHER_VALIDITY_DAYS = 30

# Load environment variables
load_dotenv()


def _env_bool(name, default='false'):
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


class Config:

    def __init__(self, **overrides):
        # Core configuration
        self.ENV = os.getenv('ENV', 'production')
        self.PORT = int(os.getenv('PORT', 5000))
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.LOG_FILE = os.getenv('LOG_FILE')
        self.CORS_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()]

        # Security
        self.ADMIN_SECRET = os.getenv('ADMIN_SECRET')

        # Document store
        self.STORE_BACKEND = os.getenv('STORE_BACKEND', 'firestore')
        self.FIREBASE_SERVICE_ACCOUNT_KEY = os.getenv('FIREBASE_SERVICE_ACCOUNT_KEY') or os.getenv('FIREBASE_CREDS')
        self.TRANSACTION_MAX_ATTEMPTS = int(os.getenv('TRANSACTION_MAX_ATTEMPTS', 5))
        self.BATCH_WRITE_LIMIT = int(os.getenv('BATCH_WRITE_LIMIT', 500))

        # Calendar
        self.TIMEZONE = os.getenv('TIMEZONE', 'Asia/Kolkata')
        self.DEFAULT_CITY = os.getenv('DEFAULT_CITY') or None
        self.LEADERBOARD_LIMIT = int(os.getenv('LEADERBOARD_LIMIT', 50))

        # Notifications
        self.NOTIFICATION_MAX_ATTEMPTS = int(os.getenv('NOTIFICATION_MAX_ATTEMPTS', 3))
        self.NOTIFICATION_WORKERS = int(os.getenv('NOTIFICATION_WORKERS', 4))
        self.NOTIFICATION_RETRY_WAIT = float(os.getenv('NOTIFICATION_RETRY_WAIT', 1))  # seconds, exponential
        self.ANNOUNCEMENT_TOPIC = os.getenv('ANNOUNCEMENT_TOPIC', 'all_users')

        # Scheduled jobs
        self.ENABLE_SCHEDULER = _env_bool('ENABLE_SCHEDULER')
        self.ARCHIVER_DRY_RUN = _env_bool('ARCHIVER_DRY_RUN', 'true')
        self.ARCHIVE_THRESHOLD_DAYS = int(os.getenv('ARCHIVE_THRESHOLD_DAYS', 7))
        self.ARCHIVE_BATCH_SIZE = 450
        self.REMINDER_INTERVAL_HOURS = 24

        # Reward rules
        self.BOUNTY_RULES = dict(BOUNTY_RULES)
        self.QUEST_RULES = dict(QUEST_RULES)
        self.QUEST_BADGES = dict(QUEST_BADGES)
        self.LEAVE_RULES = dict(LEAVE_RULES)
        self.VIBE_RULES = dict(VIBE_RULES)
        self.WEEKLY_REWARDS = dict(WEEKLY_REWARDS)
        self.THREAT_LEVEL_REQUIREMENTS = dict(THREAT_LEVEL_REQUIREMENTS)
        self.PROTECTED_QUEST_FIELDS = PROTECTED_QUEST_FIELDS
        self.SHOP_ITEMS = {item_id: dict(item) for item_id, item in SHOP_ITEMS.items()}
        self.VOUCHER_VALIDITY_DAYS = VOUCHER_VALIDITY_DAYS

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown configuration key: {key}")
            setattr(self, key, value)

    def log_config_summary(self):
        """Log a secure summary of the configuration"""
        logger.info("Configuration Summary:")
        logger.info(f"Environment: {self.ENV}")
        logger.info(f"Store backend: {self.STORE_BACKEND}")
        logger.info(f"Timezone: {self.TIMEZONE}")
        logger.info(f"Transaction attempts: {self.TRANSACTION_MAX_ATTEMPTS}, batch limit: {self.BATCH_WRITE_LIMIT}")
        logger.info(f"Scheduler enabled: {self.ENABLE_SCHEDULER} (archiver dry run: {self.ARCHIVER_DRY_RUN})")
        logger.info(f"Shop catalogue: {len(self.SHOP_ITEMS)} items")

        if self.ADMIN_SECRET:
            logger.info(f"Admin secret: {self.secure_mask(self.ADMIN_SECRET, 2, 2)}")
        else:
            logger.warning("ADMIN_SECRET not set - admin endpoints will refuse requests")

    def secure_mask(self, value, show_first=6, show_last=4):
        """Mask sensitive information for logging"""
        if not value or len(value) < (show_first + show_last):
            return "[REDACTED]"
        return f"{value[:show_first]}...{value[-show_last:]}"

# Create singleton instance
config = Config()
