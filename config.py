import os

# Beacon
BEACON_ENDPOINT = os.getenv("RUM_BEACON_ENDPOINT", "https://pixel.wp.com/boom.gif")
BEACON_MARKER = os.getenv("RUM_BEACON_MARKER", "bilmur")
BEACON_TIMEOUT = float(os.getenv("RUM_BEACON_TIMEOUT", "5"))
USER_AGENT = os.getenv("RUM_USER_AGENT", "RUMBeacon/1.0 (+contact@rum.example)")

# Collector
SCRIPT_MARKER = os.getenv("RUM_SCRIPT_MARKER", "bilmur")
SETTLE_INTERVAL_MS = int(os.getenv("RUM_SETTLE_INTERVAL_MS", "2000"))

# Logging
LOG_LEVEL = os.getenv("RUM_LOG_LEVEL", "INFO").upper()
