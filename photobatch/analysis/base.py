"""
Base Analyzer Definition

Every inference provider follows this interface.
The worker only ever calls run(); providers implement analyze().
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from photobatch.batch.schemas import PhotoRef
from photobatch.errors import AnalysisError, AnalysisErrorCode, map_error

logger = logging.getLogger(__name__)


class DetectedItem(BaseModel):
    """One object detected on a photo."""
    name: str
    category: str = "misc"
    quantity: int = Field(default=1, ge=1)
    volume_m3: float = Field(default=0.0, ge=0)
    dismountable: bool = False


class AnalysisTotals(BaseModel):
    count_items: int = 0
    volume_m3: float = 0.0


class AnalysisResult(BaseModel):
    """Structured result of analyzing one photo. Opaque to the batch pipeline."""
    photo_id: str
    room_type: str | None = Field(default=None, description="Detected room, if any")
    items: list[DetectedItem] = Field(default_factory=list)
    totals: AnalysisTotals = Field(default_factory=AnalysisTotals)
    confidence: float = Field(default=0.0, ge=0, le=1)
    provider: str = ""
    latency_ms: int = 0

    def with_totals(self) -> "AnalysisResult":
        """Fill totals from the item list."""
        self.totals = AnalysisTotals(
            count_items=sum(item.quantity for item in self.items),
            volume_m3=round(sum(item.volume_m3 * item.quantity for item in self.items), 3),
        )
        return self


class PhotoAnalyzer(ABC):
    """
    Abstract base for inference providers.

    To add a provider:
    1. Subclass and set name
    2. Implement analyze()
    3. Register it in analysis.registry
    """

    name: str

    def __init__(self, max_retries: int = 2, retry_delay: float = 2.0, timeout: float = 60.0):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

    @abstractmethod
    async def analyze(self, photo: PhotoRef) -> AnalysisResult:
        """
        Analyze one photo.

        Raise AnalysisError for classified failures; anything else is mapped.
        """
        pass

    async def run(self, photo: PhotoRef) -> AnalysisResult:
        """
        Full call: analyze with a timeout, retrying retryable failures with
        exponential backoff up to max_retries times.

        This is what the queue worker calls. Raises AnalysisError once the
        retries are exhausted or the failure is not retryable.
        """
        attempt = 0
        while True:
            start = time.monotonic()
            try:
                result = await asyncio.wait_for(self.analyze(photo), timeout=self.timeout)
                result.latency_ms = int((time.monotonic() - start) * 1000)
                result.provider = result.provider or self.name
                return result
            except asyncio.TimeoutError:
                error = AnalysisError(AnalysisErrorCode.TIMEOUT, f"Inference timed out after {self.timeout}s")
            except Exception as exc:
                error = map_error(exc)

            if not error.retryable or attempt >= self.max_retries:
                raise error

            delay = self.retry_delay * (2 ** attempt)
            attempt += 1
            logger.warning(
                f"{self.name}: attempt {attempt} for photo {photo.id} failed "
                f"({error.code.value}: {error.message}); retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
