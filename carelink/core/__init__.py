"""Configuration, security and shared runtime helpers."""
