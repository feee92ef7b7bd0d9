"""Local persistence: profile records and the node cache."""
