"""Action invokers."""
