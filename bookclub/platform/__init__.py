"""Platform-wide building blocks: errors and feature flags."""
