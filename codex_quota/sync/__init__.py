"""Divergence detection and pull/push sync against foreign stores."""
