"""Block codec, corruption validator and filesystem context."""
