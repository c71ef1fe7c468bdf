import os

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    DATABASE_URI = os.environ.get(
        "DATABASE_URI"
    ) or "sqlite+aiosqlite:///" + os.path.join(basedir, "simsync.db")

    API_BASE_URL = os.environ.get("API_BASE_URL") or "https://store.atom.com.mm/mytmapi"
    API_VERSION = os.environ.get("API_VERSION") or "4.11"
    USER_AGENT = os.environ.get("USER_AGENT") or "MyTM/4.11.1/Android/35"
    DEVICE_NAME = os.environ.get("DEVICE_NAME") or "simsync"
    REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT") or 30)

    MIRROR_URL = os.environ.get("MIRROR_URL") or "https://atom-master-8f5fa-default-rtdb.asia-southeast1.firebasedatabase.app"
    MIRROR_AUTH = os.environ.get("MIRROR_AUTH")
    MIRROR_OWNER = os.environ.get("MIRROR_OWNER") or "default"
    MIRROR_ADMIN_NAMESPACE = os.environ.get("MIRROR_ADMIN_NAMESPACE")

    CLAIM_CONCURRENCY = int(os.environ.get("CLAIM_CONCURRENCY") or 20)
    PAGE_SIZE = int(os.environ.get("PAGE_SIZE") or 10)
    ACCOUNT_LIMIT = int(os.environ.get("ACCOUNT_LIMIT") or 50)

    RETRY_MAX_ATTEMPTS = int(os.environ.get("RETRY_MAX_ATTEMPTS") or 3)
    RETRY_BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY") or 1.0)
    TOKEN_EXPIRY_MARGIN = int(os.environ.get("TOKEN_EXPIRY_MARGIN") or 300)
