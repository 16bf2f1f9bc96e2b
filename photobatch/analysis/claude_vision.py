"""
Claude Vision Analyzer

Fetches the photo and asks Claude for a structured inventory of the room.
The reply is plain JSON validated against VisionOutput.
"""
import base64
import json

import anthropic
import httpx
from pydantic import BaseModel, Field, ValidationError

from photobatch.analysis.base import AnalysisResult, DetectedItem, PhotoAnalyzer
from photobatch.batch.schemas import PhotoRef
from photobatch.errors import AnalysisError, AnalysisErrorCode

SUPPORTED_MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


class VisionOutput(BaseModel):
    """Output schema requested from the model."""
    room_type: str | None = Field(description="Room shown: salon, cuisine, chambre, bureau, salle_de_bain, garage, other")
    items: list[DetectedItem] = Field(description="Movable objects visible on the photo")
    confidence: float = Field(ge=0, le=1, description="Overall confidence of the inventory")


SYSTEM_PROMPT = """You are a moving-inventory assistant. Given a photo of a room, list every movable object.

For each object estimate its volume in cubic meters and whether it can be dismounted.
If the room is unclear, make a reasonable inference and lower the confidence."""


# Initialize client (uses ANTHROPIC_API_KEY env var)
def get_client() -> anthropic.AsyncAnthropic:
    return anthropic.AsyncAnthropic()


def _strip_code_fence(raw_text: str) -> str:
    if raw_text.startswith("```"):
        lines = raw_text.split("\n")
        return "\n".join(lines[1:-1])
    return raw_text


class ClaudeVisionAnalyzer(PhotoAnalyzer):
    name = "claude"

    def __init__(self, model: str = "claude-sonnet-4-20250514", max_tokens: int = 4096, **kwargs):
        super().__init__(**kwargs)
        self.model = model
        self.max_tokens = max_tokens

    async def _fetch_image(self, photo: PhotoRef) -> tuple[str, str]:
        """Download the photo; returns (media_type, base64 data)."""
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(photo.url)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise AnalysisError(AnalysisErrorCode.TIMEOUT, f"Timed out fetching {photo.url}: {e}")
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code >= 500:
                raise AnalysisError(AnalysisErrorCode.PROVIDER_DOWN, f"Storage returned {code} for {photo.url}")
            raise AnalysisError(AnalysisErrorCode.BAD_INPUT, f"Storage returned {code} for {photo.url}", retryable=False)
        except httpx.HTTPError as e:
            raise AnalysisError(AnalysisErrorCode.NETWORK, f"Failed to fetch {photo.url}: {e}")

        media_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        if media_type not in SUPPORTED_MEDIA_TYPES:
            raise AnalysisError(AnalysisErrorCode.BAD_INPUT, f"Unsupported media type {media_type}", retryable=False)
        return media_type, base64.standard_b64encode(response.content).decode("ascii")

    async def analyze(self, photo: PhotoRef) -> AnalysisResult:
        media_type, data = await self._fetch_image(photo)

        json_instruction = f"""

IMPORTANT: Respond with ONLY valid JSON. No markdown, no explanation, no code blocks.
The JSON must match this schema:
{json.dumps(VisionOutput.model_json_schema(), indent=2)}"""

        hint = f"The uploader says this is the room '{photo.room_type}'." if photo.room_type else ""
        messages = [{
            "role": "user",
            "content": [
                {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}},
                {"type": "text", "text": f"List the movable objects in this photo. {hint}".strip()},
            ],
        }]

        client = get_client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,
                system=SYSTEM_PROMPT + json_instruction,
                messages=messages,
            )
        except anthropic.RateLimitError as e:
            raise AnalysisError(AnalysisErrorCode.RATE_LIMIT, str(e))
        except anthropic.APITimeoutError as e:
            raise AnalysisError(AnalysisErrorCode.TIMEOUT, str(e))
        except anthropic.APIConnectionError as e:
            raise AnalysisError(AnalysisErrorCode.NETWORK, str(e))
        except anthropic.BadRequestError as e:
            raise AnalysisError(AnalysisErrorCode.BAD_INPUT, str(e), retryable=False)
        except anthropic.APIStatusError as e:
            raise AnalysisError(AnalysisErrorCode.PROVIDER_DOWN, str(e), retryable=e.status_code >= 500)

        raw_text = _strip_code_fence(response.content[0].text.strip())
        try:
            parsed = VisionOutput.model_validate(json.loads(raw_text))
        except (json.JSONDecodeError, ValidationError) as e:
            raise AnalysisError(AnalysisErrorCode.INVALID_OUTPUT, f"Invalid JSON from Claude: {e}")

        return AnalysisResult(
            photo_id=photo.id,
            room_type=parsed.room_type or photo.room_type,
            items=parsed.items,
            confidence=parsed.confidence,
            provider=self.name,
        ).with_totals()
