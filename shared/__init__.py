"""Schemas shared between the backend and its clients."""
