"""Scene label detection stage."""

import logging
from dataclasses import dataclass
from uuid import UUID

from race_photos.services.vision import VisionClient

logger = logging.getLogger(__name__)


@dataclass
class LabelDetector:
    """Attaches descriptive labels to photos."""

    client: VisionClient
    max_labels: int = 20
    min_confidence: float = 70.0

    async def detect(self, photo_id: UUID, image: bytes) -> list[str]:
        """Return label names, most confident first; failures yield none."""
        try:
            labels = await self.client.detect_labels(
                image, self.max_labels, self.min_confidence
            )
        except Exception:
            logger.exception(
                "Label detection failed", extra={"photo_id": str(photo_id)}
            )
            return []
        ordered = sorted(labels, key=lambda label: label.confidence, reverse=True)
        names: list[str] = []
        for label in ordered:
            if label.name not in names:
                names.append(label.name)
        return names
