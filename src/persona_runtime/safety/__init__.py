"""Reply safety gate."""
