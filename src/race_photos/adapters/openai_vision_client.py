"""OpenAI Responses API client for bib reading and labels."""

import json
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError

from race_photos.domain.bibs import parse_bib_numbers
from race_photos.domain.errors import ExternalServiceError
from race_photos.domain.vision import (
    BibCandidate,
    DetectedLabel,
    FaceMatch,
    IndexedFace,
    TextDetectionResult,
)
from race_photos.services.vision import (
    BIB_TEXT_SCHEMA,
    LABELS_SCHEMA,
    VisionClient,
    to_data_url,
)

_PROVIDER = "openai"
_BIB_PROMPT = (
    "Read every race bib visible in this photo. "
    "Return one line per bib with the printed text and your confidence (0-100)."
)
_LABELS_PROMPT = (
    "List up to {max_labels} short labels describing the scene, clothing and "
    "setting of this race photo, each with a confidence (0-100)."
)


@dataclass
class OpenAIVisionClient(VisionClient):
    """Vision client backed by OpenAI Responses API.

    Used when no face collection is configured, so face operations are
    unavailable.
    """

    client: AsyncOpenAI
    model: str
    store: bool = False
    provider_id: str = "ocr_openai"
    supports_faces: bool = False

    @classmethod
    def create(
        cls, api_key: str, model: str, store: bool = False
    ) -> "OpenAIVisionClient":
        """Create an OpenAI vision client."""
        return cls(client=AsyncOpenAI(api_key=api_key), model=model, store=store)

    async def detect_text(self, image: bytes) -> TextDetectionResult:
        """Ask the model for bib lines and parse numbers out of them."""
        payload = await self._extract(image, _BIB_PROMPT, BIB_TEXT_SCHEMA, "bib_lines")
        candidates: list[BibCandidate] = []
        for line in payload.get("lines", []):
            confidence = float(line.get("confidence", 0.0))
            for number in parse_bib_numbers(str(line.get("text", ""))):
                candidates.append(BibCandidate(number=number, confidence=confidence))
        return TextDetectionResult(candidates=candidates, provider_id=self.provider_id)

    async def detect_labels(
        self, image: bytes, max_labels: int, min_confidence: float
    ) -> list[DetectedLabel]:
        """Ask the model for scene labels."""
        payload = await self._extract(
            image,
            _LABELS_PROMPT.format(max_labels=max_labels),
            LABELS_SCHEMA,
            "scene_labels",
        )
        labels = [
            DetectedLabel(
                name=str(label.get("name", "")),
                confidence=float(label.get("confidence", 0.0)),
            )
            for label in payload.get("labels", [])
        ]
        kept = [
            label
            for label in labels
            if label.name and label.confidence >= min_confidence
        ]
        return kept[:max_labels]

    async def index_faces(
        self, image: bytes, external_image_id: str, max_faces: int
    ) -> list[IndexedFace]:
        """Face indexing is not available with this provider."""
        raise ExternalServiceError(_PROVIDER, "face indexing is not supported")

    async def search_faces(
        self, face_id: str, max_faces: int, threshold: float
    ) -> list[FaceMatch]:
        """Face search is not available with this provider."""
        raise ExternalServiceError(_PROVIDER, "face search is not supported")

    async def delete_faces(self, face_ids: list[str]) -> None:
        """Nothing is ever indexed, so there is nothing to delete."""

    async def ensure_collection(self) -> None:
        """No face collection to prepare."""

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.close()

    async def _extract(
        self, image: bytes, prompt: str, schema: dict[str, object], name: str
    ) -> dict[str, object]:
        request_payload: dict[str, object] = {
            "model": self.model,
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": to_data_url(image)},
                    ],
                }
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": name,
                    "strict": True,
                    "schema": schema,
                }
            },
            "store": self.store,
        }
        try:
            response = await self.client.responses.create(**request_payload)
        except OpenAIError as exc:
            raise ExternalServiceError(_PROVIDER, str(exc)) from exc
        output_text = response.output_text
        if not output_text:
            raise ExternalServiceError(_PROVIDER, "OpenAI returned an empty response")
        return json.loads(output_text)
