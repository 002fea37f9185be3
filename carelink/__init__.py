"""carelink SOS coordination service."""
