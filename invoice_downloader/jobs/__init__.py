"""Per-vendor job tracking and orchestration."""
