"""Configuration, models and the market engine."""
