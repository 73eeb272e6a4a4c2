"""Health endpoint monitor that alerts a webhook on failure state changes."""
