"""Configuration management"""
import os
from pathlib import Path
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
LOG_DIR = Path(os.getenv("LOG_DIR", BASE_DIR / "logs"))
QR_DIR = DATA_DIR / "qr"
TOKENS_DIR = Path(os.getenv("TOKENS_DIR", DATA_DIR / "tokens"))
BANNER_FILE = Path(os.getenv("BANNER_FILE", BASE_DIR / "img" / "session-banner.jpeg"))

CHROME_REMOTE_HOST = os.getenv("CHROME_REMOTE_HOST", "127.0.0.1")
CHROME_REMOTE_PORT = int(os.getenv("CHROME_REMOTE_PORT", "9222"))
CHROME_REMOTE_URL = os.getenv(
    "CHROME_REMOTE_URL",
    f"http://{CHROME_REMOTE_HOST}:{CHROME_REMOTE_PORT}",
)
import platform

system = platform.system()
if system == "Windows":
    DEFAULT_CHROME_BINARY = "C:/Program Files/Google/Chrome/Application/chrome.exe"
elif system == "Darwin":
    DEFAULT_CHROME_BINARY = "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
else:
    DEFAULT_CHROME_BINARY = "google-chrome"

CHROME_BINARY = os.getenv("CHROME_BINARY") or DEFAULT_CHROME_BINARY
CHROME_USER_DATA_DIR = Path(os.getenv("CHROME_USER_DATA_DIR", BASE_DIR / "chrome-profile")).resolve()
CHROME_EXTRA_ARGS = os.getenv(
    "CHROME_EXTRA_ARGS",
    "--remote-allow-origins=* --disable-dev-shm-usage --no-sandbox --disable-gpu",
)
CHROME_HEADLESS = os.getenv("CHROME_HEADLESS", "true").lower() in {"1", "true", "yes"}
CHROME_AUTO_CLOSE = os.getenv("CHROME_AUTO_CLOSE", "false").lower() in {"1", "true", "yes"}
CHROME_MANAGE_PROCESS = os.getenv("CHROME_MANAGE_PROCESS", "true").lower() in {"1", "true", "yes"}
CHROME_STARTUP_TIMEOUT = float(os.getenv("CHROME_STARTUP_TIMEOUT", "40"))
# WhatsApp Web refuses headless user agents
CHROME_USER_AGENT = os.getenv(
    "CHROME_USER_AGENT",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)

SESSION_NAME = os.getenv("SESSION_NAME", "default")
STATUS_POLL_INTERVAL = float(os.getenv("STATUS_POLL_INTERVAL", "0.1"))
SETTLE_DELAY = float(os.getenv("SETTLE_DELAY", "2.0"))
NAVIGATION_TIMEOUT = float(os.getenv("NAVIGATION_TIMEOUT", "30"))
LOGIN_WAIT_TIMEOUT = float(os.getenv("LOGIN_WAIT_TIMEOUT", "60"))

MCP_SERVER_NAME = os.getenv("MCP_SERVER_NAME", "WhatsApp Session MCP")

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOG_DIR.mkdir(parents=True, exist_ok=True)
QR_DIR.mkdir(parents=True, exist_ok=True)
TOKENS_DIR.mkdir(parents=True, exist_ok=True)
CHROME_USER_DATA_DIR.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def whatsapp_url() -> str:
    return os.getenv("WHATSAPP_URL", "https://web.whatsapp.com/")
