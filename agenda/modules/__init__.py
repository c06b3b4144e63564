"""Feature modules of the export engine."""
