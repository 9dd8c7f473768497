"""Exceptions raised by the fulfillment pipeline."""

from __future__ import annotations


class FulfillmentError(RuntimeError):
    """Base class for every error raised by the pipeline."""

    code = "fulfillment_error"

    def __init__(self, message: str = "Fulfillment error"):
        super().__init__(message)


class DownloadError(FulfillmentError):
    """Raised when a source image cannot be fetched over HTTP."""

    code = "download_failed"

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to download image from {url}: {reason}")
        self.url = url
        self.reason = reason


class UploadError(FulfillmentError):
    """Raised when processed bytes cannot be written to object storage."""

    code = "upload_failed"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to upload {path}: {reason}")
        self.path = path
        self.reason = reason


class ImageProcessingError(FulfillmentError):
    """Raised when an image cannot be decoded, resampled or composited."""

    code = "image_processing_failed"


class NotFoundError(FulfillmentError):
    """Raised when a referenced record does not exist."""

    code = "not_found"


class CampaignNotFoundError(NotFoundError):
    """Raised when the campaign to fulfil does not exist."""

    code = "campaign_not_found"

    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign {campaign_id} not found")
        self.campaign_id = campaign_id


class CampaignStateError(FulfillmentError):
    """Raised when a campaign is not in a status that allows processing."""

    code = "campaign_not_processable"

    def __init__(self, campaign_id: str, status: str, expected: str = "paid"):
        super().__init__(f"Campaign {campaign_id} status is {status}, expected '{expected}'")
        self.campaign_id = campaign_id
        self.status = status


class InvalidStatusError(FulfillmentError):
    """Raised when a mailpiece status string is not part of the state machine."""

    code = "invalid_status"


class ProviderConfigurationError(FulfillmentError):
    """Raised when the mail provider client is missing its credentials."""

    code = "missing_provider_configuration"

    def __init__(self, message: str = "Stannp API key is not configured"):
        super().__init__(message)
