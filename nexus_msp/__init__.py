"""NexusMSP back office with Microsoft 365 synchronization."""
