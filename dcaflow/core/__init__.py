"""Core trading engine: precision, retry, fill accounting and monitoring."""
