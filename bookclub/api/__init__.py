"""HTTP surface for entitlements."""
