"""Product trend momentum and keyword competition scoring."""
