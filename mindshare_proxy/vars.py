import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "mindshare-proxy")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Targets used when PROXY_TARGETS is not set: logical name -> env variable
DEFAULT_TARGET_ENV = {
    "network": "BOT_A_URL",
    "fogochain": "BOT_B_URL",
}

# Default human readable titles for the landing page
TARGET_TITLES = {
    "network": "Network Dashboard",
    "fogochain": "FogoChain Dashboard",
}
