"""Book club platform: entitlements and permission enforcement."""
