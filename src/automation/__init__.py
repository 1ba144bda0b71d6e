"""Event-driven automation for standing instructions."""
