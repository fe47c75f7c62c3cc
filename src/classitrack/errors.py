"""Exception hierarchy shared by the inference pipeline and the ledger."""

from __future__ import annotations


class ClassiTrackError(Exception):
    """Base class for all ClassiTrack errors."""


class FrameConversionError(ClassiTrackError):
    """A raw camera frame could not be converted to RGB."""


class UnsupportedFrameFormatError(FrameConversionError):
    """The camera frame uses a pixel layout with no converter."""


class ImageDecodeError(ClassiTrackError):
    """Still image bytes could not be decoded or exceed the size limit."""


class ModelUnavailableError(ClassiTrackError):
    """The classifier is not loaded, or loading it failed."""


class StorageUnavailableError(ClassiTrackError):
    """Reading or writing the persisted ledger failed. Safe to retry."""


class LedgerCorruptError(ClassiTrackError):
    """A persisted record could not be decoded."""


class DuplicateRecordError(ClassiTrackError):
    """A record with the same id is already in the ledger."""
