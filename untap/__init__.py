"""untap — synthetic monitoring of third-party services."""
