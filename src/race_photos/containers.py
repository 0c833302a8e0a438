"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from race_photos.adapters.openai_vision_client import OpenAIVisionClient
from race_photos.adapters.rekognition_vision_client import RekognitionVisionClient
from race_photos.adapters.supabase_bib_repository import (
    SupabaseBibNumberRepository,
    SupabaseRosterRepository,
)
from race_photos.adapters.supabase_credit_repository import SupabaseCreditRepository
from race_photos.adapters.supabase_face_repository import SupabaseFaceRepository
from race_photos.adapters.supabase_object_store import SupabaseObjectStore
from race_photos.adapters.supabase_photo_repository import SupabasePhotoRepository
from race_photos.config import Settings
from race_photos.services.bibs import BibRecognitionService
from race_photos.services.clustering import ClusteringScheduler, FaceClusteringEngine
from race_photos.services.credits import CreditLedgerService
from race_photos.services.cropping import SmartCropper
from race_photos.services.faces import FaceIndexer
from race_photos.services.ingestion import IngestionCoordinator
from race_photos.services.labels import LabelDetector
from race_photos.services.quality import QualityAnalyzer
from race_photos.services.renditions import ObjectStore, RenditionGenerator
from race_photos.services.sessions import UploadSessionStore
from race_photos.services.task_queue import BoundedTaskQueue
from race_photos.services.vision import VisionClient


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    object_store: ObjectStore
    vision_client: VisionClient
    task_queue: BoundedTaskQueue
    session_store: UploadSessionStore
    credit_service: CreditLedgerService
    clustering_scheduler: ClusteringScheduler
    ingestion: IngestionCoordinator
    close_resources: Callable[[], Awaitable[None]]


def build_vision_client(
    settings: Settings,
) -> RekognitionVisionClient | OpenAIVisionClient:
    """Pick Rekognition when AWS is configured, otherwise OpenAI."""
    access_key_id = settings.aws_access_key_id
    secret_access_key = settings.aws_secret_access_key
    if access_key_id and secret_access_key:
        return RekognitionVisionClient.create(
            region=settings.aws_region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            collection_id=settings.aws_rekognition_collection_id,
        )
    if settings.openai_api_key:
        return OpenAIVisionClient.create(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            store=settings.openai_store,
        )
    raise RuntimeError("Configure AWS Rekognition or OpenAI credentials")


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    pipeline = resolved_settings.pipeline
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    photo_repository = SupabasePhotoRepository(supabase_client)
    bib_repository = SupabaseBibNumberRepository(supabase_client)
    roster_repository = SupabaseRosterRepository(supabase_client)
    face_repository = SupabaseFaceRepository(supabase_client)
    credit_service = CreditLedgerService(SupabaseCreditRepository(supabase_client))
    object_store = SupabaseObjectStore.create(
        supabase_client, resolved_settings.storage_bucket
    )
    vision_client = build_vision_client(resolved_settings)

    task_queue = BoundedTaskQueue(max_concurrent=pipeline.max_concurrent_tasks)
    session_store = UploadSessionStore(
        retention_seconds=pipeline.session_retention_seconds
    )
    clustering_engine = FaceClusteringEngine(
        client=vision_client,
        photo_repository=photo_repository,
        bib_repository=bib_repository,
        face_repository=face_repository,
        roster_repository=roster_repository,
        threshold=pipeline.face_match_threshold,
        max_matches=pipeline.face_search_max_faces,
        enabled=pipeline.face_index_enabled,
    )
    clustering_scheduler = ClusteringScheduler(
        engine=clustering_engine, delay_seconds=pipeline.clustering_delay_seconds
    )
    ingestion = IngestionCoordinator(
        config=pipeline,
        queue=task_queue,
        sessions=session_store,
        credits=credit_service,
        photo_repository=photo_repository,
        roster_repository=roster_repository,
        store=object_store,
        renditions=RenditionGenerator(store=object_store, config=pipeline),
        quality=QualityAnalyzer(threshold=pipeline.quality_threshold),
        bibs=BibRecognitionService(
            client=vision_client,
            repository=bib_repository,
            min_confidence=pipeline.ocr_confidence_threshold,
        ),
        faces=FaceIndexer(
            client=vision_client,
            repository=face_repository,
            max_faces=pipeline.max_faces_per_photo,
        ),
        cropper=SmartCropper(store=object_store, config=pipeline),
        labels=LabelDetector(
            client=vision_client,
            max_labels=pipeline.label_max,
            min_confidence=pipeline.label_min_confidence,
        ),
        scheduler=clustering_scheduler,
    )

    async def close_resources() -> None:
        await clustering_scheduler.shutdown()
        await task_queue.close()
        await object_store.close()
        await vision_client.close()

    return AppContainer(
        settings=resolved_settings,
        object_store=object_store,
        vision_client=vision_client,
        task_queue=task_queue,
        session_store=session_store,
        credit_service=credit_service,
        clustering_scheduler=clustering_scheduler,
        ingestion=ingestion,
        close_resources=close_resources,
    )
