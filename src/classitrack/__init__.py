"""ClassiTrack: on-device image classification with an accuracy ledger."""

__version__ = "0.1.0"
