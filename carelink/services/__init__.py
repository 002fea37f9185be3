"""SOS domain services."""
