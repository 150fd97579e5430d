import os


def _path_list(value, default):
    if not value:
        return default
    return tuple(p.strip() for p in value.split(',') if p.strip())


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key'

    # 外部托管后端 (Supabase 兼容: /auth/v1, /rest/v1)
    SUPABASE_URL = (os.environ.get('SUPABASE_URL') or 'http://localhost:54321').rstrip('/')
    SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY') or ''
    BACKEND_TIMEOUT = float(os.environ.get('BACKEND_TIMEOUT') or 15)
    SITE_URL = (os.environ.get('SITE_URL') or 'http://localhost:5000').rstrip('/')

    # The backend session travels in our own signed cookie
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key'
    JWT_TOKEN_LOCATION = ['cookies']
    JWT_COOKIE_SECURE = os.environ.get('JWT_COOKIE_SECURE', '').lower() in ('1', 'true', 'yes')
    JWT_COOKIE_CSRF_PROTECT = True
    JWT_ACCESS_TOKEN_EXPIRES = 60 * 60 * 24 * 7

    BABEL_DEFAULT_LOCALE = 'en'

    # Route gating
    PROTECTED_PATHS = _path_list(os.environ.get('PROTECTED_PATHS'),
                                 ('/profile', '/leaderboard', '/planner'))
    AUTH_PATHS = _path_list(os.environ.get('AUTH_PATHS'),
                            ('/login', '/signup', '/forgot-password'))
    LOGIN_PATH = os.environ.get('LOGIN_PATH') or '/login'
    LANDING_PATH = os.environ.get('LANDING_PATH') or '/focus'

    # Seconds between polls of the ranked profile window
    PROFILE_FEED_INTERVAL = float(os.environ.get('PROFILE_FEED_INTERVAL') or 10)
    # Pause before re-reading a profile that is not there yet
    PROFILE_RETRY_DELAY = 0.8

    # Views untouched this long (seconds) are torn down unless a timer is running
    VIEW_IDLE_TTL = float(os.environ.get('VIEW_IDLE_TTL') or 30 * 60)
    VIEW_SWEEP_INTERVAL = float(os.environ.get('VIEW_SWEEP_INTERVAL') or 60)
