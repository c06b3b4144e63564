"""API keys, passphrase encryption and key custody."""
