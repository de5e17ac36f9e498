"""Screen-time managers: storage, accounting, lifecycle and notifications."""
