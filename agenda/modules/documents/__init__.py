"""Documents module - PDF rendering of journal entries."""
