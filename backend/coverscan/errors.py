class CoverscanError(Exception):
    """Base class for errors raised by the pipeline and its adapters."""


class CollaboratorError(CoverscanError):
    """Raised when an external provider returns a response we cannot use."""


class DownloadError(CoverscanError):
    """Raised when a catalogue download cannot be completed."""


class DownloadTooLargeError(DownloadError):
    """Raised when a download exceeds the configured size ceiling."""


class UnsupportedFormatError(CoverscanError):
    """Raised when a book file is neither PDF nor EPUB."""


class InvalidStatusTransition(CoverscanError):
    """Raised when an upload would leave a terminal status or regress to pending."""
