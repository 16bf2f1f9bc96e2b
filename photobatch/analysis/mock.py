"""
Mock Analyzer

Deterministic stand-in provider for development and load tests.
Items are derived from the room hint so repeated runs give identical results.
"""
import asyncio

from photobatch.analysis.base import AnalysisResult, DetectedItem, PhotoAnalyzer
from photobatch.batch.schemas import PhotoRef

_ROOM_ITEMS = {
    "salon": [
        DetectedItem(name="Canapé", category="mobilier", volume_m3=1.8),
        DetectedItem(name="Table basse", category="mobilier", volume_m3=0.3, dismountable=True),
    ],
    "cuisine": [
        DetectedItem(name="Réfrigérateur", category="electromenager", volume_m3=0.9),
        DetectedItem(name="Chaise", category="mobilier", quantity=4, volume_m3=0.15),
    ],
    "chambre": [
        DetectedItem(name="Lit double", category="mobilier", volume_m3=2.0, dismountable=True),
        DetectedItem(name="Armoire", category="mobilier", volume_m3=1.5, dismountable=True),
    ],
}
_DEFAULT_ITEMS = [
    DetectedItem(name="Table", category="mobilier", volume_m3=0.6, dismountable=True),
    DetectedItem(name="Chaise", category="mobilier", quantity=2, volume_m3=0.15, dismountable=True),
]


class MockAnalyzer(PhotoAnalyzer):
    name = "mock"

    def __init__(self, delay: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def analyze(self, photo: PhotoRef) -> AnalysisResult:
        if self.delay:
            await asyncio.sleep(self.delay)

        room_type = photo.room_type or "salon"
        items = [item.model_copy() for item in _ROOM_ITEMS.get(room_type, _DEFAULT_ITEMS)]
        return AnalysisResult(
            photo_id=photo.id,
            room_type=room_type,
            items=items,
            confidence=0.9,
            provider=self.name,
        ).with_totals()
