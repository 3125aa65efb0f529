"""Token refresh and propagation to every store that mirrors an account."""
