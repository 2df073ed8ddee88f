"""
AI extraction service client.

Uploads a document (PDF or image) to the extraction service and parses the
JSON answer into an AIExtractionPayload. Rate limiting is decided by an
external collaborator; this client only asks it before each call.
"""

import logging
from typing import Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import ExtractionError, ExtractionTimeoutError, RateLimitExceeded
from ..schemas.extraction import AIExtractionPayload

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/tiff",
    }
)


class RateLimiter(Protocol):
    """Decides whether a caller may make another extraction request."""

    def allow(self, caller_id: str) -> bool: ...


class ExtractionAPIError(ExtractionError):
    """Extraction service returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Extraction API error {status_code}: {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class AIExtractionClient:
    """
    Client for the AI document extraction service.

    Features:
    - Multipart upload of the source file
    - Automatic retry with backoff on transient HTTP failures
    - Per-caller rate limiting through an injected RateLimiter
    """

    EXTRACT_ENDPOINT = "/api/extract"

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 120.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize extraction client.

        Args:
            base_url: Extraction service URL (e.g., "http://localhost:8090")
            token: Bearer token; omitted from requests when empty
            timeout: Default request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
            rate_limiter: Consulted before every request; None disables limiting
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, config, rate_limiter: Optional[RateLimiter] = None) -> "AIExtractionClient":
        """Build a client from ``Config.extraction``."""
        extraction = config.extraction
        return cls(
            base_url=extraction.base_url,
            token=extraction.token,
            timeout=extraction.timeout_seconds,
            max_retries=extraction.max_retries,
            backoff_factor=extraction.backoff_factor,
            rate_limiter=rate_limiter,
        )

    def extract(
        self,
        file_bytes: bytes,
        mime_type: str,
        caller_id: str,
        file_name: str = "document",
        timeout: Optional[float] = None,
    ) -> AIExtractionPayload:
        """
        Extract structured data from a document.

        Args:
            file_bytes: Raw file content
            mime_type: MIME type of the file
            caller_id: Identity the rate limiter accounts the request to
            file_name: File name sent with the upload
            timeout: Overrides the client timeout for this call

        Returns:
            Parsed AIExtractionPayload

        Raises:
            RateLimitExceeded: If the rate limiter denies the caller
            ExtractionTimeoutError: If the service does not answer in time
            ExtractionAPIError: If the service answers with an error status
            ExtractionError: On connection failures or an unusable payload
        """
        if mime_type not in SUPPORTED_MIME_TYPES:
            raise ExtractionError(f"Unsupported file type for extraction: {mime_type}")
        if not file_bytes:
            raise ExtractionError("Cannot extract from an empty file")

        if self.rate_limiter is not None and not self.rate_limiter.allow(caller_id):
            logger.warning("Extraction rate limit hit for %s", caller_id)
            raise RateLimitExceeded(caller_id)

        url = f"{self.base_url}{self.EXTRACT_ENDPOINT}"
        try:
            response = self.session.post(
                url,
                files={"file": (file_name, file_bytes, mime_type)},
                data={"callerId": caller_id},
                timeout=self.timeout if timeout is None else timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ExtractionTimeoutError(f"Extraction request timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ExtractionError(f"Failed to connect to extraction service at {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"Extraction request failed: {e}") from e

        if not response.ok:
            raise ExtractionAPIError(
                status_code=response.status_code,
                message=response.reason,
                response_body=response.text,
            )

        try:
            payload = AIExtractionPayload.from_dict(response.json())
        except ValueError as e:
            raise ExtractionError(f"Unusable extraction payload: {e}") from e

        logger.info(
            "Extracted %s (%d pages, %d rows, confidence %.2f) for %s",
            payload.document_type,
            payload.page_count,
            len(payload.rows),
            payload.confidence,
            caller_id,
        )
        return payload
