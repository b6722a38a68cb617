"""
Upload Orchestrator - Sign -> Direct Transfer -> Complete

Session lifecycle:
    SIGNED -> UPLOADED -> PROCESSING -> COMPLETED
                                     -> FAILED
    SIGNED | UPLOADED -> ABANDONED (expiry or cancellation)

The raw bytes never pass through the sign call; complete() fetches them from
storage, processes them once, writes every artifact and finally persists the
manifest. The manifest write is the single commit point: on any failure the
artifacts written during the attempt are deleted best-effort and nothing is
persisted.
"""

import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from src.core.config import Settings
from src.core.exceptions import (
    NotFoundError,
    ProcessingTimeoutError,
    StorageError,
    ValidationError,
)
from src.core.logging import LogContext, get_logger
from src.core.metrics import (
    record_abandoned,
    record_artifact,
    record_upload,
    track_latency,
    track_stage_latency,
)
from src.core.storage import IStorage
from src.engines.media.keys import make_artifact_key, make_upload_key, new_artifact_prefix
from src.engines.media.placeholder import encode_blurhash
from src.engines.media.processor import ImageProcessor, ProcessedImage, ProcessingResult
from src.engines.media.repositories import AssetRepository, UploadSessionRepository
from src.engines.media.schemas import (
    CompleteUploadResponseDTO,
    DeleteAssetResponseDTO,
    DerivativeDTO,
    DerivativesDTO,
    ImageAssetDTO,
    OriginalDTO,
    SignUploadResponseDTO,
    UploadTargetDTO,
)
from src.engines.media.validators import (
    ValidationResult,
    aspect_ratio_warnings,
    brand_color_warnings,
    size_warnings,
    validate_alt_text,
    validate_detected_format,
    validate_upload,
)
from src.modules.media.models import ImageAsset, ImageFormat, MediaKind, UploadSession, UploadState, utcnow

logger = get_logger(__name__)

SWEEP_BATCH_SIZE = 100


def _raise_if_invalid(result: ValidationResult, stage: str):
    if not result.valid:
        raise ValidationError(result.reason, field=result.field, reason_code=result.code, stage=stage)


def asset_to_dto(asset: ImageAsset, storage: Optional[IStorage] = None) -> ImageAssetDTO:
    """Render a stored manifest, adding public URLs when a storage is given."""
    manifest = asset.derivatives or {}

    def url_for(key: str) -> Optional[str]:
        return storage.public_url(key) if storage else None

    original = manifest.get("original") or {
        "key": asset.key,
        "width": asset.width,
        "height": asset.height,
        "sizeBytes": asset.bytes,
    }
    return ImageAssetDTO(
        id=asset.id,
        width=asset.width,
        height=asset.height,
        bytes=asset.bytes,
        format=asset.format,
        blurhash=asset.blurhash,
        avg_color=asset.avg_color,
        alt=asset.alt,
        derivatives=DerivativesDTO(
            original=OriginalDTO(**original, url=url_for(original["key"])),
            sizes=[DerivativeDTO(**size, url=url_for(size["key"])) for size in manifest.get("sizes", [])],
        ),
        bucket=asset.bucket,
        key=asset.key,
        mime=asset.mime,
        kind=asset.kind,
        entity_slug=asset.entity_slug,
        content_hash=asset.content_hash,
        created_at=asset.created_at,
    )


class UploadOrchestrator:
    """
    Owns UploadSession records for their whole lifetime.

    Built per request from process-wide collaborators (storage, session
    store, processor, settings) and a request-scoped AssetRepository.
    """

    def __init__(
        self,
        storage: IStorage,
        sessions: UploadSessionRepository,
        processor: ImageProcessor,
        config: Settings,
        assets: Optional[AssetRepository] = None,
    ):
        self.storage = storage
        self.sessions = sessions
        self.processor = processor
        self.config = config
        self.assets = assets

    def _require_assets(self) -> AssetRepository:
        if self.assets is None:
            raise RuntimeError("UploadOrchestrator was built without an asset repository")
        return self.assets

    # =========================================================================
    # Sign
    # =========================================================================

    async def sign(
        self,
        filename: str,
        content_type: str,
        size_bytes: int,
        kind: MediaKind,
        entity_slug: str,
    ) -> SignUploadResponseDTO:
        """Validate declared metadata and issue a direct upload target."""
        upload_id = uuid.uuid4().hex

        with LogContext(upload_id=upload_id, stage="sign"), track_stage_latency("sign"):
            check = validate_upload(filename, content_type, size_bytes, self.config.MAX_IMAGE_SIZE_BYTES)
            if not check.valid:
                record_upload("rejected")
                logger.info("upload_rejected", reason=check.code, field=check.field)
                _raise_if_invalid(check, stage="sign")

            destination_key = make_upload_key(
                kind=kind.value,
                entity_slug=entity_slug,
                upload_id=upload_id,
                filename=filename,
            )
            target = await self.storage.presign_upload(
                destination_key,
                content_type,
                self.config.UPLOAD_URL_TTL_SECONDS,
            )

            now = utcnow()
            session = UploadSession(
                id=upload_id,
                filename=filename,
                content_type=content_type,
                size_bytes=size_bytes,
                kind=kind,
                entity_slug=entity_slug,
                destination_key=destination_key,
                artifact_prefix=new_artifact_prefix(),
                created_at=now,
                expires_at=now + timedelta(seconds=self.config.UPLOAD_SESSION_TTL_SECONDS),
            )
            await self.sessions.create(session)

            warnings = size_warnings(size_bytes, self.config.PREFERRED_IMAGE_SIZE_BYTES)
            record_upload("signed")
            logger.info(
                "upload_signed",
                key=destination_key,
                kind=kind.value,
                size_bytes=size_bytes,
                content_type=content_type,
            )

        return SignUploadResponseDTO(
            upload_id=upload_id,
            upload_target=UploadTargetDTO(**target),
            key=destination_key,
            expires_at=session.expires_at,
            warnings=warnings or None,
        )

    # =========================================================================
    # Complete
    # =========================================================================

    async def complete(
        self,
        upload_id: str,
        alt: str,
        target: ImageFormat = ImageFormat.WEBP,
    ) -> CompleteUploadResponseDTO:
        """
        Process the uploaded bytes and persist the manifest.

        Raises:
            ValidationError: alt text or received bytes rejected
            NotFoundError: session unknown, consumed, expired, or bytes missing
            DecodeError / EncodeError / StorageError: processing failed
            ProcessingTimeoutError: the whole step exceeded its deadline
        """
        # Checked before claiming so a bad alt does not consume the session
        _raise_if_invalid(validate_alt_text(alt, self.config.MAX_ALT_LENGTH), stage="complete")

        session = await self.sessions.claim(upload_id)
        if session is None:
            raise NotFoundError(
                "Upload session not found or already completed",
                resource="upload_session",
                upload_id=upload_id,
                stage="complete",
            )

        if session.is_expired():
            await self._abandon(session, reason="expired")
            raise NotFoundError(
                "Upload session expired",
                resource="upload_session",
                upload_id=upload_id,
                stage="complete",
            )

        timeout = self.config.MEDIA_COMPLETE_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(self._complete(session, alt.strip(), target), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("upload_timed_out", upload_id=upload_id, timeout_seconds=timeout)
            raise ProcessingTimeoutError(timeout, upload_id=upload_id, stage="complete")

    async def _complete(
        self,
        session: UploadSession,
        alt: str,
        target: ImageFormat,
    ) -> CompleteUploadResponseDTO:
        written: List[str] = []

        with LogContext(upload_id=session.id, stage="download") as ctx:
            try:
                with track_stage_latency("download"):
                    raw = await self.storage.download(session.destination_key)
                session.transition(UploadState.UPLOADED)
                session.transition(UploadState.PROCESSING)

                ctx.set_stage("validate")
                _raise_if_invalid(
                    validate_upload(
                        session.filename,
                        session.content_type,
                        len(raw),
                        self.config.MAX_IMAGE_SIZE_BYTES,
                    ),
                    stage="validate",
                )
                info = self.processor.inspect(raw)
                _raise_if_invalid(validate_detected_format(info.format, session.content_type), stage="validate")

                ctx.set_stage("process")
                with track_stage_latency("process"):
                    result = await asyncio.to_thread(self.processor.process, raw, target)

                ctx.set_stage("store")
                with track_stage_latency("store"):
                    manifest = await self._store_artifacts(session, result, written)

                placeholder = await asyncio.to_thread(encode_blurhash, result.placeholder_sample)

                ctx.set_stage("persist")
                original = result.original
                asset = ImageAsset(
                    bucket=self.storage.bucket(),
                    key=manifest["original"]["key"],
                    kind=session.kind.value,
                    entity_slug=session.entity_slug,
                    mime=session.content_type,
                    content_hash=hashlib.md5(raw).hexdigest()[:8],
                    width=original.width,
                    height=original.height,
                    bytes=original.size_bytes,
                    format=target.value,
                    blurhash=placeholder,
                    avg_color=result.avg_color,
                    alt=alt,
                    derivatives=manifest,
                )
                with track_stage_latency("persist"):
                    asset = await self._persist(asset)

                session.transition(UploadState.COMPLETED)

            except BaseException as e:
                # Also reached on cancellation by the request deadline
                self._mark_failed(session)
                deleted = await self._cleanup(written)
                record_upload("failed")
                logger.warning(
                    "upload_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    state=session.state.value,
                    cleaned_up=len(deleted),
                )
                raise

            finally:
                await self._delete_raw(session)

            record_upload("completed")
            logger.info(
                "upload_completed",
                asset_id=asset.id,
                width=asset.width,
                height=asset.height,
                derivatives=len(manifest["sizes"]),
                format=target.value,
            )

        warnings = self._completion_warnings(session, result)
        return CompleteUploadResponseDTO(
            image_asset=asset_to_dto(asset, self.storage),
            warnings=warnings or None,
        )

    async def _store_artifacts(
        self,
        session: UploadSession,
        result: ProcessingResult,
        written: List[str],
    ) -> Dict[str, Any]:
        """Upload every artifact concurrently and build the manifest."""

        async def store(artifact: ProcessedImage) -> Dict[str, Any]:
            key = make_artifact_key(
                kind=session.kind.value,
                entity_slug=session.entity_slug,
                prefix=session.artifact_prefix,
                suffix=artifact.suffix,
                extension=artifact.extension,
            )
            # Recorded before the write so a partial object is still cleaned up
            written.append(key)
            await self.storage.upload(key, artifact.data, artifact.mime)
            record_artifact(artifact.format.value, artifact.suffix, artifact.size_bytes)
            logger.info("artifact_uploaded", key=key, size_bytes=artifact.size_bytes)
            return {
                "key": key,
                "width": artifact.width,
                "height": artifact.height,
                "sizeBytes": artifact.size_bytes,
            }

        uploads = [asyncio.ensure_future(store(artifact)) for artifact in result.artifacts()]
        try:
            outcomes = await asyncio.shield(asyncio.gather(*uploads, return_exceptions=True))
        except asyncio.CancelledError:
            # Writes already handed to worker threads land anyway; wait for them before cleanup
            await asyncio.wait(uploads)
            raise
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        original, *sizes = outcomes
        return {
            "original": original,
            "sizes": [
                {**entry, "suffix": artifact.suffix}
                for entry, artifact in zip(sizes, result.derivatives)
            ],
        }

    async def _persist(self, asset: ImageAsset) -> ImageAsset:
        """
        Write the manifest row.

        The commit is the point of no return. A deadline that fires while the
        write is in flight waits for its outcome: a landed commit stands and
        the completion succeeds, anything else is still a failure.
        """
        write = asyncio.ensure_future(self._write_manifest(asset))
        try:
            return await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait({write})
            if write.cancelled() or write.exception() is not None:
                raise
            logger.warning("deadline_passed_after_commit", asset_id=asset.id)
            return write.result()

    async def _write_manifest(self, asset: ImageAsset) -> ImageAsset:
        try:
            return await self._require_assets().create(asset)
        except SQLAlchemyError as e:
            raise StorageError(f"Manifest write failed: {e}", backend="database", stage="persist")

    def _completion_warnings(self, session: UploadSession, result: ProcessingResult) -> List[str]:
        warnings: List[str] = []
        if result.skipped:
            warnings.append(
                f"Skipped derivative sizes larger than the {result.source_width}x{result.source_height} "
                f"source: {', '.join(s.suffix for s in result.skipped)}"
            )
        warnings.extend(aspect_ratio_warnings(result.source_width, result.source_height, session.kind))
        warnings.extend(brand_color_warnings(result.avg_color))
        return warnings

    @staticmethod
    def _mark_failed(session: UploadSession):
        if session.state == UploadState.PROCESSING:
            session.transition(UploadState.FAILED)
        elif session.state in (UploadState.SIGNED, UploadState.UPLOADED):
            # Bytes never arrived
            session.transition(UploadState.ABANDONED)

    async def _cleanup(self, keys: List[str]) -> List[str]:
        if not keys:
            return []
        try:
            return await self.storage.delete_many(list(keys))
        except StorageError as e:
            logger.warning("artifact_cleanup_failed", keys=len(keys), error=e.message)
            return []

    async def _delete_raw(self, session: UploadSession):
        try:
            await self.storage.delete(session.destination_key)
        except StorageError as e:
            logger.warning("raw_upload_delete_failed", key=session.destination_key, error=e.message)

    async def _abandon(self, session: UploadSession, reason: str):
        session.transition(UploadState.ABANDONED)
        await self._delete_raw(session)
        record_abandoned(reason)
        record_upload("abandoned")
        logger.info("upload_abandoned", upload_id=session.id, reason=reason, key=session.destination_key)

    # =========================================================================
    # Cancel / Sweep
    # =========================================================================

    async def cancel(self, upload_id: str) -> UploadSession:
        """Explicit cancellation of a session that has not been completed."""
        session = await self.sessions.claim(upload_id)
        if session is None:
            raise NotFoundError(
                "Upload session not found or already completed",
                resource="upload_session",
                upload_id=upload_id,
                stage="cancel",
            )
        await self._abandon(session, reason="cancelled")
        return session

    @track_latency("sweep")
    async def sweep_abandoned(self, now: Optional[datetime] = None) -> int:
        """Reclaim raw uploads of every session whose TTL has passed."""
        reclaimed = 0
        while True:
            expired = await self.sessions.pop_expired(now, limit=SWEEP_BATCH_SIZE)
            for session in expired:
                with LogContext(upload_id=session.id, stage="sweep"):
                    await self._abandon(session, reason="expired")
            reclaimed += len(expired)
            if len(expired) < SWEEP_BATCH_SIZE:
                break

        if reclaimed:
            logger.info("abandoned_uploads_swept", count=reclaimed)
        return reclaimed

    # =========================================================================
    # Assets
    # =========================================================================

    async def get_asset(self, asset_id: str) -> ImageAssetDTO:
        asset = await self._require_assets().get(asset_id)
        if asset is None:
            raise NotFoundError(f"Image asset {asset_id} not found", resource="image_asset")
        return asset_to_dto(asset, self.storage)

    async def delete_asset(self, asset_id: str) -> DeleteAssetResponseDTO:
        """Delete every stored artifact, then the manifest row."""
        assets = self._require_assets()
        asset = await assets.get(asset_id)
        if asset is None:
            raise NotFoundError(f"Image asset {asset_id} not found", resource="image_asset")

        keys = asset.storage_keys()
        with LogContext(stage="delete"):
            deleted = await self.storage.delete_many(keys)
            remaining = [key for key in keys if key not in set(deleted)]
            if remaining:
                # Row kept so a retry can finish the job; delete is idempotent
                raise StorageError(
                    f"Failed to delete {len(remaining)} of {len(keys)} artifacts",
                    backend=self.storage.backend_name,
                    stage="delete",
                    details={"remaining_keys": remaining},
                )

            try:
                await assets.delete(asset)
            except SQLAlchemyError as e:
                raise StorageError(f"Manifest delete failed: {e}", backend="database", stage="delete")

            logger.info("asset_deleted", asset_id=asset_id, deleted_keys=len(deleted))

        return DeleteAssetResponseDTO(success=True, deleted_keys=deleted)
