"""OAuth2 session and account endpoint management."""
