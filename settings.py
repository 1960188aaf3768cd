import os
from dotenv import load_dotenv

load_dotenv()

# Paths to the JSON configuration documents
CONNECT_CONFIG_PATH = os.getenv("KICKER_CONNECTCONFIG", "connect-config.json")
KICKER_CONFIG_PATH = os.getenv("KICKER_CONFIG", "kicker-config.json")

# HTTP listener
HOST = os.getenv("KICKER_HOST", "0.0.0.0")
PORT = int(os.getenv("KICKER_PORT", "41331"))

# Logging
LOG_LEVEL = os.getenv("KICKER_LOG_LEVEL", "DEBUG").upper()
LOG_JSON = os.getenv("KICKER_LOG_JSON", "false").lower() in ("1", "true", "yes", "on")
