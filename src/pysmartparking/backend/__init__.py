"""Store and identity backends."""
