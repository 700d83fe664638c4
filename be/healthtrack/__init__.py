"""HealthTrack backend."""
