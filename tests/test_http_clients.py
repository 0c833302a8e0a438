"""Tests for network-bound adapters."""

import asyncio
import json
from dataclasses import dataclass, field

import httpx
import pytest
from botocore.exceptions import ClientError

from race_photos.adapters.openai_vision_client import OpenAIVisionClient
from race_photos.adapters.rekognition_vision_client import RekognitionVisionClient
from race_photos.adapters.supabase_object_store import SupabaseObjectStore
from race_photos.domain.errors import ExternalServiceError


class _FakeResponses:
    def __init__(self, output_text: str) -> None:
        self.output_text = output_text
        self.last_payload: dict[str, object] | None = None

    async def create(self, **kwargs):  # type: ignore[no-untyped-def]
        self.last_payload = kwargs
        return type("Resp", (), {"output_text": self.output_text})()


class _FakeOpenAI:
    def __init__(self, output: dict[str, object] | None = None) -> None:
        self.responses = _FakeResponses(json.dumps(output) if output else "")


def _openai_client(output: dict[str, object] | None) -> OpenAIVisionClient:
    fake = _FakeOpenAI(output)
    return OpenAIVisionClient(client=fake, model="gpt-5.2")  # type: ignore[arg-type]


def test_openai_detect_text_parses_bib_lines() -> None:
    client = _openai_client(
        {
            "lines": [
                {"text": "1234 BERLIN 2024", "confidence": 92},
                {"text": "57", "confidence": 60},
            ]
        }
    )

    result = asyncio.run(client.detect_text(b"\xff\xd8\xff-image"))

    assert [(c.number, c.confidence) for c in result.candidates] == [
        ("1234", 92.0),
        ("57", 60.0),
    ]
    assert result.provider_id == "ocr_openai"
    payload = client.client.responses.last_payload
    assert payload is not None
    assert payload["store"] is False
    assert payload["text"]["format"]["type"] == "json_schema"
    image_part = payload["input"][0]["content"][1]
    assert image_part["image_url"].startswith("data:image/jpeg;base64,")


def test_openai_detect_labels_filters_confidence() -> None:
    client = _openai_client(
        {
            "labels": [
                {"name": "Person", "confidence": 97},
                {"name": "Crowd", "confidence": 40},
                {"name": "", "confidence": 99},
            ]
        }
    )

    labels = asyncio.run(client.detect_labels(b"image", 5, 70.0))

    assert [label.name for label in labels] == ["Person"]


def test_openai_empty_output_raises() -> None:
    client = _openai_client(None)

    with pytest.raises(ExternalServiceError) as excinfo:
        asyncio.run(client.detect_text(b"image"))

    assert excinfo.value.provider == "openai"


def test_openai_client_has_no_face_support() -> None:
    client = _openai_client({"lines": []})

    assert client.supports_faces is False
    with pytest.raises(ExternalServiceError):
        asyncio.run(client.index_faces(b"image", "e:p", 5))
    with pytest.raises(ExternalServiceError):
        asyncio.run(client.search_faces("face", 5, 85.0))


@dataclass
class FakeRekognition:
    """Records boto3-style calls and returns canned responses."""

    responses: dict[str, dict[str, object]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, object]]] = field(default_factory=list)
    closed: bool = False

    def _handle(self, operation: str, kwargs: dict[str, object]) -> dict[str, object]:
        self.calls.append((operation, kwargs))
        if operation in self.errors:
            raise self.errors[operation]
        return self.responses.get(operation, {})

    def detect_text(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("detect_text", kwargs)

    def index_faces(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("index_faces", kwargs)

    def search_faces(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("search_faces", kwargs)

    def delete_faces(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("delete_faces", kwargs)

    def detect_labels(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("detect_labels", kwargs)

    def list_collections(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("list_collections", kwargs)

    def create_collection(self, **kwargs):  # type: ignore[no-untyped-def]
        return self._handle("create_collection", kwargs)

    def close(self) -> None:
        self.closed = True


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def test_rekognition_detect_text_uses_line_detections() -> None:
    fake = FakeRekognition(
        responses={
            "detect_text": {
                "TextDetections": [
                    {"Type": "LINE", "DetectedText": "BIB 0457", "Confidence": 98.5},
                    {"Type": "WORD", "DetectedText": "0457", "Confidence": 98.5},
                    {"Type": "LINE", "DetectedText": "2023 EDITION", "Confidence": 99},
                ]
            }
        }
    )
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    result = asyncio.run(client.detect_text(b"image"))

    assert [(c.number, c.confidence) for c in result.candidates] == [("457", 98.5)]
    assert result.provider_id == "ocr_aws"


def test_rekognition_index_faces_clamps_boxes() -> None:
    fake = FakeRekognition(
        responses={
            "index_faces": {
                "FaceRecords": [
                    {
                        "Face": {
                            "FaceId": "face-1",
                            "Confidence": 99.9,
                            "BoundingBox": {
                                "Left": -0.05,
                                "Top": 0.1,
                                "Width": 0.3,
                                "Height": 1.2,
                            },
                        }
                    },
                    {"Face": {}},
                ]
            }
        }
    )
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    faces = asyncio.run(client.index_faces(b"image", "event:photo", 10))

    assert len(faces) == 1
    assert faces[0].face_id == "face-1"
    assert faces[0].bounding_box.left == 0.0
    assert faces[0].bounding_box.height == 1.0
    operation, kwargs = fake.calls[0]
    assert operation == "index_faces"
    assert kwargs["CollectionId"] == "faces"
    assert kwargs["ExternalImageId"] == "event:photo"
    assert kwargs["MaxFaces"] == 10


def test_rekognition_search_faces_maps_matches() -> None:
    fake = FakeRekognition(
        responses={
            "search_faces": {
                "FaceMatches": [
                    {
                        "Similarity": 96.2,
                        "Face": {"FaceId": "face-2", "ExternalImageId": "e:p"},
                    }
                ]
            }
        }
    )
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    matches = asyncio.run(client.search_faces("face-1", 100, 85.0))

    assert matches[0].face_id == "face-2"
    assert matches[0].external_image_id == "e:p"
    assert matches[0].similarity == 96.2
    assert fake.calls[0][1]["FaceMatchThreshold"] == 85.0


def test_rekognition_errors_become_external_service_errors() -> None:
    fake = FakeRekognition(
        errors={"detect_labels": _client_error("ThrottlingException", "DetectLabels")}
    )
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    with pytest.raises(ExternalServiceError) as excinfo:
        asyncio.run(client.detect_labels(b"image", 20, 70.0))

    assert excinfo.value.provider == "rekognition"


def test_rekognition_ensure_collection_creates_missing_collection() -> None:
    fake = FakeRekognition(responses={"list_collections": {"CollectionIds": []}})
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    asyncio.run(client.ensure_collection())

    assert ("create_collection", {"CollectionId": "faces"}) in fake.calls


def test_rekognition_ensure_collection_tolerates_existing_collection() -> None:
    fake = FakeRekognition(
        responses={"list_collections": {"CollectionIds": []}},
        errors={
            "create_collection": _client_error(
                "ResourceAlreadyExistsException", "CreateCollection"
            )
        },
    )
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    asyncio.run(client.ensure_collection())
    asyncio.run(client.close())

    assert fake.closed is True


def test_rekognition_delete_faces_skips_empty_lists() -> None:
    fake = FakeRekognition()
    client = RekognitionVisionClient(client=fake, collection_id="faces")

    asyncio.run(client.delete_faces([]))
    asyncio.run(client.delete_faces(["face-1"]))

    assert fake.calls == [
        ("delete_faces", {"CollectionId": "faces", "FaceIds": ["face-1"]})
    ]


@dataclass
class FakeBucket:
    objects: dict[str, bytes] = field(default_factory=dict)
    options: dict[str, dict[str, str]] = field(default_factory=dict)
    removed: list[list[str]] = field(default_factory=list)

    def upload(self, path: str, file: bytes, file_options: dict[str, str]) -> None:
        self.objects[path] = file
        self.options[path] = file_options

    def create_signed_url(self, path: str, expires_in: int) -> dict[str, str]:
        return {"signedURL": f"https://storage.example.com/sign/{path}?token=t"}

    def download(self, path: str) -> bytes:
        return self.objects[path]

    def remove(self, paths: list[str]) -> None:
        self.removed.append(paths)


@dataclass
class FakeStorage:
    bucket: FakeBucket = field(default_factory=FakeBucket)
    names: list[str] = field(default_factory=list)

    def from_(self, name: str) -> FakeBucket:
        self.names.append(name)
        return self.bucket


@dataclass
class FakeStorageClient:
    storage: FakeStorage = field(default_factory=FakeStorage)


def test_object_store_put_get_and_delete() -> None:
    seen_urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_urls.append(str(request.url))
        return httpx.Response(200, content=b"rendition-bytes")

    storage_client = FakeStorageClient()
    store = SupabaseObjectStore(
        client=storage_client,  # type: ignore[arg-type]
        bucket="photos",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    async def scenario() -> tuple[bytes, bytes]:
        await store.put(b"data", "event/web/photo.webp", "image/webp")
        chunks = [chunk async for chunk in store.get("event/web/photo.webp")]
        streamed = b"".join(chunks)
        buffered = await store.get_buffer("event/web/photo.webp")
        await store.delete_many(["event/web/photo.webp"])
        await store.delete_many([])
        await store.close()
        return streamed, buffered

    streamed, buffered = asyncio.run(scenario())

    bucket = storage_client.storage.bucket
    assert bucket.options["event/web/photo.webp"] == {
        "content-type": "image/webp",
        "upsert": "true",
    }
    assert streamed == b"rendition-bytes"
    assert buffered == b"data"
    assert bucket.removed == [["event/web/photo.webp"]]
    assert seen_urls == [
        "https://storage.example.com/sign/event/web/photo.webp?token=t"
    ]
    assert set(storage_client.storage.names) == {"photos"}


def test_object_store_get_raises_for_missing_objects() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    store = SupabaseObjectStore(
        client=FakeStorageClient(),  # type: ignore[arg-type]
        bucket="photos",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    async def scenario() -> None:
        async for _ in store.get("event/web/missing.webp"):
            pass

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())
