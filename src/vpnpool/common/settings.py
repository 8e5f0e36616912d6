import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def boolean_env(key: str, default: bool = False) -> bool:
    if key not in os.environ:
        return default
    return os.getenv(key, "0").lower() in ("1", "true", "yes")


def list_env(key: str, default: str) -> list[str]:
    return [v.strip() for v in os.getenv(key, default).split(",") if v.strip()]


# Database settings
DB_USER = os.getenv("DB_USER", "vpn")
if password_file := os.getenv("POSTGRES_PASSWORD_FILE"):
    DB_PASSWORD = pathlib.Path(password_file).read_text().strip()
else:
    DB_PASSWORD = os.getenv("DB_PASSWORD", "vpn")

DB_HOST = os.getenv("DB_HOST", "postgres")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "vpnpool")


def make_db_url(
    user=DB_USER, password=DB_PASSWORD, host=DB_HOST, port=DB_PORT, db=DB_NAME
):
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


DB_URL = os.getenv("DATABASE_URL", make_db_url())


# Broker settings
CELERY_QUEUE_PREFIX = os.getenv("CELERY_QUEUE_PREFIX", "vpnpool")
CELERY_BROKER_TYPE = os.getenv("CELERY_BROKER_TYPE", "amqp").lower()  # amqp or redis
CELERY_BROKER_USER = os.getenv("CELERY_BROKER_USER", "vpn")
CELERY_BROKER_PASSWORD = os.getenv("CELERY_BROKER_PASSWORD", "vpn")
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

CELERY_BROKER_HOST = os.getenv("CELERY_BROKER_HOST", "")
if not CELERY_BROKER_HOST and CELERY_BROKER_TYPE == "amqp":
    RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
    RABBITMQ_PORT = os.getenv("RABBITMQ_PORT", "5672")
    CELERY_BROKER_HOST = f"{RABBITMQ_HOST}:{RABBITMQ_PORT}//"

CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", f"db+{DB_URL}")


# File storage settings
FILE_STORAGE_DIR = pathlib.Path(os.getenv("FILE_STORAGE_DIR", "/tmp/vpnpool_files"))
CLIENT_CONFIG_DIR = pathlib.Path(
    os.getenv("CLIENT_CONFIG_DIR", FILE_STORAGE_DIR / "client-configs")
)

storage_dirs = [
    FILE_STORAGE_DIR,
    CLIENT_CONFIG_DIR,
]
for dir in storage_dirs:
    dir.mkdir(parents=True, exist_ok=True)


# Capacity settings
MAX_CONCURRENT_SESSIONS = int(os.getenv("MAX_CONCURRENT_SESSIONS", 3))
MAX_COMPUTE_UNITS = int(os.getenv("MAX_COMPUTE_UNITS", 3))
DEFAULT_OWNER_QUOTA = int(os.getenv("DEFAULT_OWNER_QUOTA", 1))

# Provisioning retry settings (delays in seconds)
PROVISION_MAX_ATTEMPTS = int(os.getenv("PROVISION_MAX_ATTEMPTS", 3))
PROVISION_BASE_DELAY = float(os.getenv("PROVISION_BASE_DELAY", 1.0))
PROVISION_MAX_DELAY = float(os.getenv("PROVISION_MAX_DELAY", 30.0))
PROVISION_RETRY_JITTER = boolean_env("PROVISION_RETRY_JITTER", False)
# Suggested caller backoff once internal retries are exhausted
PROVISION_RETRY_AFTER = int(os.getenv("PROVISION_RETRY_AFTER", 60))
CAPACITY_RETRY_AFTER = int(os.getenv("CAPACITY_RETRY_AFTER", 60))

# Hard wall-clock ceiling for a single deprovision call
DEPROVISION_TIMEOUT = float(os.getenv("DEPROVISION_TIMEOUT", 60))
# Ceiling for the compute health probe made by status queries
STATUS_TIMEOUT = float(os.getenv("STATUS_TIMEOUT", 4))

# Idle detection
# Intervals are in seconds; a shorter sweep detects idleness sooner at the
# cost of more store queries.
IDLE_SWEEP_INTERVAL = int(os.getenv("IDLE_SWEEP_INTERVAL", 60))
DEFAULT_IDLE_TIMEOUT_MINUTES = int(os.getenv("DEFAULT_IDLE_TIMEOUT_MINUTES", 10))
MIN_IDLE_TIMEOUT_MINUTES = 1
MAX_IDLE_TIMEOUT_MINUTES = 1440

MAX_ERROR_MESSAGE_LENGTH = 1000


# VPN network settings
VPN_SUBNET = os.getenv("VPN_SUBNET", "10.8.0.0/24")
IP_POOL_START = int(os.getenv("IP_POOL_START", 2))
IP_POOL_END = int(os.getenv("IP_POOL_END", 254))
VPN_PORT = int(os.getenv("VPN_PORT", 51820))
VPN_IMAGE = os.getenv("VPN_IMAGE", "vpnpool-wireguard:latest")
VPN_CONTAINER_MEMORY_LIMIT = os.getenv("VPN_CONTAINER_MEMORY_LIMIT", "256m")
VPN_PUBLIC_HOST = os.getenv("VPN_PUBLIC_HOST", "127.0.0.1")
VPN_DNS_SERVERS = list_env("VPN_DNS_SERVERS", "8.8.8.8,8.8.4.4")
VPN_ALLOWED_IPS = os.getenv("VPN_ALLOWED_IPS", "0.0.0.0/0")
VPN_PERSISTENT_KEEPALIVE = int(os.getenv("VPN_PERSISTENT_KEEPALIVE", 25))


# Secrets settings
if secrets_key_file := os.getenv("SECRETS_ENCRYPTION_KEY_FILE"):
    SECRETS_ENCRYPTION_KEY = pathlib.Path(secrets_key_file).read_text().strip()
else:
    SECRETS_ENCRYPTION_KEY = os.getenv("SECRETS_ENCRYPTION_KEY", "")
SECRETS_ENCRYPTION_SALT = os.getenv(
    "SECRETS_ENCRYPTION_SALT", "vpnpool-session-keys"
).encode()


# API settings
SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000")
API_KEY_HEADER_NAME = os.getenv("API_KEY_HEADER_NAME", "X-API-Key")
TRUST_FORWARDED_FOR = boolean_env("TRUST_FORWARDED_FOR", False)
# How long a published client config download link stays valid (seconds)
CONFIG_LINK_VALID_FOR = int(os.getenv("CONFIG_LINK_VALID_FOR", 60 * 60))

# Audit trail retention
EVENT_RETENTION_DAYS = int(os.getenv("EVENT_RETENTION_DAYS", 5))
EVENT_CLEANUP_INTERVAL = int(os.getenv("EVENT_CLEANUP_INTERVAL", 24 * 60 * 60))
