"""HTTP surface for genguard."""
