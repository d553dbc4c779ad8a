"""
Error taxonomy.

Page-level errors are recovered by the traversal, record-level errors by the
uploader loop. Only configuration and authentication errors end a run.
"""


class HarvestError(Exception):
    """Base class for every error raised by the harvester."""


class TransientNavigationError(HarvestError):
    """A page load failed or timed out."""


class DownloadTimeoutError(TransientNavigationError):
    """No staged file appeared before the download wait ran out."""


class ChallengeTimeoutError(HarvestError):
    """The CAPTCHA gate could not clear the page."""


class AuthenticationRequiredError(HarvestError):
    """Login failed and no human resolved it."""


class AssetTooSmallError(HarvestError):
    """
    Downloaded bytes at or below the minimum viable size.
    These are error pages served in place of the audio file.
    """

    def __init__(self, byte_length, threshold):
        self.byte_length = byte_length
        self.threshold = threshold
        super().__init__(
            f"File too small ({byte_length} bytes, need more than {threshold}) - likely an error page"
        )


class RetrievalError(HarvestError):
    """All retrieval attempts for one record failed."""


class RecordLevelFailure(HarvestError):
    """
    One record's pipeline failed.
    Caught by the uploader loop, never past it.
    """

    def __init__(self, record, index, cause):
        self.record = record
        self.index = index
        self.cause = cause
        super().__init__(f"[{index}] {record.title_or_default()}: {cause}")


class FatalConfigurationError(HarvestError):
    """Required configuration is missing. Raised before any processing."""
