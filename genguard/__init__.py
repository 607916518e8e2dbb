"""genguard: guards for expensive, externally billed generation."""

__version__ = "0.1.0"
