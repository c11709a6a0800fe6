"""Request authentication for the internal identity API."""
