"""Request/response models for the public API."""
