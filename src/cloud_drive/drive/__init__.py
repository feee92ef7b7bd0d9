"""Drive nodes, path resolution and the client facade."""
