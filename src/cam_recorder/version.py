"""Version information for cam-recorder."""

APP_VERSION = "1.0.0"

__all__ = ["APP_VERSION"]
