"""Version information for recobar."""

APP_VERSION = "0.4.0"
