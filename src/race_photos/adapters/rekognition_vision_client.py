"""AWS Rekognition adapter for text, face and label detection."""

import asyncio
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from race_photos.domain.bibs import parse_bib_numbers
from race_photos.domain.errors import ExternalServiceError
from race_photos.domain.vision import (
    BibCandidate,
    BoundingBox,
    DetectedLabel,
    FaceMatch,
    IndexedFace,
    TextDetectionResult,
)
from race_photos.services.vision import VisionClient

_PROVIDER = "rekognition"


def _unit(value: object) -> float:
    """Clamp Rekognition coordinates, which may spill outside the frame."""
    if not isinstance(value, int | float):
        return 0.0
    return min(1.0, max(0.0, float(value)))


@dataclass
class RekognitionVisionClient(VisionClient):
    """Vision client backed by a Rekognition face collection."""

    client: Any
    collection_id: str
    provider_id: str = "ocr_aws"
    supports_faces: bool = True

    @classmethod
    def create(
        cls,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        collection_id: str,
    ) -> "RekognitionVisionClient":
        """Create a Rekognition client for the given credentials."""
        client = boto3.client(
            "rekognition",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )
        return cls(client=client, collection_id=collection_id)

    async def detect_text(self, image: bytes) -> TextDetectionResult:
        """Read numbers from LINE detections."""
        response = await self._call("detect_text", Image={"Bytes": image})
        candidates: list[BibCandidate] = []
        for detection in response.get("TextDetections", []):
            if detection.get("Type") != "LINE":
                continue
            confidence = float(detection.get("Confidence", 0.0))
            for number in parse_bib_numbers(detection.get("DetectedText", "")):
                candidates.append(BibCandidate(number=number, confidence=confidence))
        return TextDetectionResult(candidates=candidates, provider_id=self.provider_id)

    async def index_faces(
        self, image: bytes, external_image_id: str, max_faces: int
    ) -> list[IndexedFace]:
        """Index faces into the collection."""
        response = await self._call(
            "index_faces",
            CollectionId=self.collection_id,
            Image={"Bytes": image},
            ExternalImageId=external_image_id,
            DetectionAttributes=["DEFAULT"],
            MaxFaces=max_faces,
            QualityFilter="AUTO",
        )
        faces: list[IndexedFace] = []
        for record in response.get("FaceRecords", []):
            face = record.get("Face", {})
            if not face.get("FaceId"):
                continue
            box = face.get("BoundingBox", {})
            faces.append(
                IndexedFace(
                    face_id=face["FaceId"],
                    confidence=float(face.get("Confidence", 0.0)),
                    bounding_box=BoundingBox(
                        left=_unit(box.get("Left")),
                        top=_unit(box.get("Top")),
                        width=_unit(box.get("Width")),
                        height=_unit(box.get("Height")),
                    ),
                )
            )
        return faces

    async def search_faces(
        self, face_id: str, max_faces: int, threshold: float
    ) -> list[FaceMatch]:
        """Search the collection for faces similar to a stored face."""
        response = await self._call(
            "search_faces",
            CollectionId=self.collection_id,
            FaceId=face_id,
            MaxFaces=max_faces,
            FaceMatchThreshold=threshold,
        )
        return [
            FaceMatch(
                face_id=match.get("Face", {}).get("FaceId", ""),
                external_image_id=match.get("Face", {}).get("ExternalImageId"),
                similarity=float(match.get("Similarity", 0.0)),
            )
            for match in response.get("FaceMatches", [])
        ]

    async def delete_faces(self, face_ids: list[str]) -> None:
        """Remove faces from the collection."""
        if not face_ids:
            return
        await self._call(
            "delete_faces", CollectionId=self.collection_id, FaceIds=face_ids
        )

    async def detect_labels(
        self, image: bytes, max_labels: int, min_confidence: float
    ) -> list[DetectedLabel]:
        """Detect scene labels."""
        response = await self._call(
            "detect_labels",
            Image={"Bytes": image},
            MaxLabels=max_labels,
            MinConfidence=min_confidence,
        )
        return [
            DetectedLabel(
                name=label.get("Name", ""),
                confidence=float(label.get("Confidence", 0.0)),
            )
            for label in response.get("Labels", [])
            if label.get("Name")
        ]

    async def ensure_collection(self) -> None:
        """Create the face collection if it is missing."""
        response = await self._call("list_collections")
        if self.collection_id in response.get("CollectionIds", []):
            return
        try:
            await asyncio.to_thread(
                self.client.create_collection, CollectionId=self.collection_id
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code != "ResourceAlreadyExistsException":
                raise ExternalServiceError(_PROVIDER, str(exc)) from exc

    async def close(self) -> None:
        """Close the underlying HTTP connections."""
        self.client.close()

    async def _call(self, operation: str, **kwargs: object) -> dict[str, Any]:
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise ExternalServiceError(_PROVIDER, f"{operation}: {exc}") from exc
