"""Small helpers: byte-quantity codec and path handling."""
