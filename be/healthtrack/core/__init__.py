"""Configuration, tokens and the event bus."""
