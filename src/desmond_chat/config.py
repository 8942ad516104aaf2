"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with DESMOND_DATA_DIR
DATA_DIR = Path(os.getenv("DESMOND_DATA_DIR", str(Path.home() / ".desmond_chat")))

# Single slot holding the persisted conversation list
STORE_PATH = DATA_DIR / "chat_history.json"

# Byte budget for the persisted conversation list
STORAGE_QUOTA_BYTES = int(os.getenv("DESMOND_STORAGE_QUOTA_BYTES", str(5 * 1024 * 1024)))

# Seconds between file processing status polls
POLL_INTERVAL = float(os.getenv("DESMOND_POLL_INTERVAL", "5"))

# Seconds allowed for a credential verification round trip
VERIFY_TIMEOUT = float(os.getenv("DESMOND_VERIFY_TIMEOUT", "10"))

# Timezone used for message timestamps and the system instruction clock
TIMEZONE = os.getenv("DESMOND_TIMEZONE", "Asia/Manila")

DEFAULT_ASPECT_RATIO = "16:9"

# Stored credential reused at startup
STORED_CREDENTIAL = os.getenv("GEMINI_API_KEY")
