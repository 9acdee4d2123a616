import os
from dotenv import load_dotenv

load_dotenv()


def as_list(value):
    """Split a comma separated setting into a clean list."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(',') if part.strip()]


class Config:
    # Gemini
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY')
    GEMINI_MODELS = os.environ.get('GEMINI_MODELS', 'gemini-2.0-flash,gemini-1.5-flash,gemini-1.5-pro')
    GEMINI_API_BASE = os.environ.get('GEMINI_API_BASE', 'https://generativelanguage.googleapis.com/v1beta')
    GEMINI_TIMEOUT = float(os.environ.get('GEMINI_TIMEOUT', '30'))
    GEMINI_MAX_ATTEMPTS = int(os.environ.get('GEMINI_MAX_ATTEMPTS', '3'))
    GEMINI_BACKOFF_SECONDS = float(os.environ.get('GEMINI_BACKOFF_SECONDS', '1.0'))
    GEMINI_BACKOFF_MAX = float(os.environ.get('GEMINI_BACKOFF_MAX', '8.0'))
    ROUTER_STRATEGY = os.environ.get('ROUTER_STRATEGY', 'best')

    # Auth
    JWT_SECRET = os.environ.get('JWT_SECRET')
    JWT_EXPIRES_HOURS = int(os.environ.get('JWT_EXPIRES_HOURS', '6'))
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD')
    PASSWORD_SCHEME = os.environ.get('PASSWORD_SCHEME', 'bcrypt')

    # Users storage
    USERS_BACKEND = os.environ.get('USERS_BACKEND', 'file')
    USERS_FILE = os.environ.get('USERS_FILE', os.path.join('data', 'users.json'))
    SUPABASE_URL = os.environ.get('SUPABASE_URL')
    # Service role key bypasses RLS; fall back to the anon key
    SUPABASE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY') or os.environ.get('SUPABASE_KEY')
    SUPABASE_USERS_TABLE = os.environ.get('SUPABASE_USERS_TABLE', 'app_users')

    # Chat
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
    DIRECTIVES_FILE = os.environ.get('DIRECTIVES_FILE', 'ai-directives.json')
    MAX_CHAT_FILES = int(os.environ.get('MAX_CHAT_FILES', '4'))
    MAX_CHAT_MESSAGES = int(os.environ.get('MAX_CHAT_MESSAGES', '40'))
