import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Settings:
    """Process-level settings read from the environment (.env supported)."""

    def __init__(self):
        # --- BLING ENDPOINTS ---
        self.API_BASE_URL = os.getenv('BLING_API_BASE_URL', 'https://api.bling.com.br/Api/v3').rstrip('/')
        self.OAUTH_BASE_URL = os.getenv('BLING_OAUTH_BASE_URL', 'https://www.bling.com.br/Api/v3/oauth').rstrip('/')

        # --- HTTP BEHAVIOUR ---
        self.REQUEST_TIMEOUT = float(os.getenv('BLING_REQUEST_TIMEOUT', '30'))
        self.MAX_RETRIES = int(os.getenv('BLING_MAX_RETRIES', '3'))
        self.BASE_DELAY = float(os.getenv('BLING_BASE_DELAY', '1.0'))
        self.PAGE_SIZE = int(os.getenv('BLING_PAGE_SIZE', '100'))

        # Seconds subtracted from expires_in before a token counts as expired
        self.TOKEN_EXPIRY_MARGIN = int(os.getenv('BLING_TOKEN_EXPIRY_MARGIN', '300'))
        self.OAUTH_STATE_TTL_MINUTES = int(os.getenv('BLING_OAUTH_STATE_TTL', '10'))

        # --- APP ---
        self.APP_URL = (os.getenv('APP_URL') or os.getenv('HOST') or '').rstrip('/')
        self.ADMIN_UI_URL = os.getenv('ADMIN_UI_URL', '/a/settings/bling')
        self.DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')
        self.DATABASE_SSL = _env_bool('DATABASE_SSL', 'false')
        self.PLATFORM_FACTORY = os.getenv('BLING_PLATFORM_FACTORY', '')

        # --- SCHEDULER ---
        self.SCHEDULER_ENABLED = _env_bool('BLING_SCHEDULER_ENABLED', 'true')
        self.DAILY_SYNC_AT = os.getenv('BLING_DAILY_SYNC_AT', '02:00')
        self.ORDER_STATUS_SYNC_MINUTES = int(os.getenv('BLING_ORDER_STATUS_SYNC_MINUTES', '30'))
        self.LOG_RETENTION_DAYS = int(os.getenv('BLING_LOG_RETENTION_DAYS', '14'))


settings = Settings()
