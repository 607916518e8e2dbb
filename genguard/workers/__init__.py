"""Background jobs for genguard."""
