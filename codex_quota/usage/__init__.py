"""Usage and quota clients for both vendors."""
