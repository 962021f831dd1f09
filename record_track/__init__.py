"""RecordTrack: sales and payment reconciliation for small shops."""

__version__ = "0.3.0"
