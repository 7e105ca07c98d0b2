"""Real-time gateway for the device spec scraper."""
