import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from config import ARTIFACT_ROLES, DOCUMENT_CONFIGS
from .errors import InvalidInput, PersistenceError
from .models import Disposition, KycRequest, TokenStatus, VerificationRecord, utcnow
from .schemas import KycRequestRead, RequestOverview, SubmissionPayload, SubmissionReceipt
from .storage import ArtifactStorage, StoredArtifact
from .tokens import TokenGuard, mask_token

logger = logging.getLogger(__name__)


class VerificationService:
    """
    Server side of the intake flow: stores captured artifacts and turns a
    finished session into one verification record awaiting manual review.
    """

    def __init__(self, session_factory: sessionmaker, guard: TokenGuard, storage: ArtifactStorage):
        self.session_factory = session_factory
        self.guard = guard
        self.storage = storage

    def upload(
        self,
        token: str,
        role: str,
        content: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> StoredArtifact:
        """Store one captured side or selfie for an active request"""
        if not token or not role or not content:
            raise InvalidInput("Missing required fields")
        if role not in ARTIFACT_ROLES:
            raise InvalidInput(f"Unknown file type: {role}")

        identity = self.guard.require_active(token)
        return self.storage.save(identity.id, role, content, filename=filename, content_type=content_type)

    def submit(self, payload: SubmissionPayload) -> SubmissionReceipt:
        """
        Persist the verification record, then close the token.

        Storing the record is what makes the submission succeed. A failed
        status flip afterwards is logged and reported in the receipt only.
        """
        if not payload.token:
            raise InvalidInput("Missing token")
        if not payload.document_front_url:
            raise InvalidInput("Missing document image URL")
        if not payload.selfie_url:
            raise InvalidInput("Missing selfie URL")
        if payload.document_type and payload.document_type not in DOCUMENT_CONFIGS:
            raise InvalidInput(f"Unknown document type: {payload.document_type}")

        identity = self.guard.require_active(payload.token)
        logger.info("Submitting verification for request %s (token %s)", identity.id, mask_token(payload.token))

        record_id = self._store_record(identity.id, payload)
        status_updated = self.guard.finalize(identity.id)
        if not status_updated:
            logger.error("Submission for request %s stored but status not updated", identity.id)

        return SubmissionReceipt(record_id=record_id, status_updated=status_updated)

    def _store_record(self, request_id: int, payload: SubmissionPayload) -> int:
        try:
            with self.session_factory() as db:
                existing = db.execute(
                    select(VerificationRecord.id).where(VerificationRecord.kyc_request_id == request_id)
                ).scalar_one_or_none()
                if existing is not None:
                    # Retry after an earlier partial success: the evidence is already stored
                    logger.info("Request %s already has record %s, reusing it", request_id, existing)
                    return existing

                now = utcnow()
                record = VerificationRecord(
                    kyc_request_id=request_id,
                    document_front_url=payload.document_front_url,
                    document_back_url=payload.document_back_url or None,
                    selfie_url=payload.selfie_url,
                    face_match_score=None,
                    ocr_data_json=payload.ocr_data_json.model_dump() if payload.ocr_data_json else None,
                    document_type=payload.document_type or None,
                    country=payload.country or None,
                    verification_status=Disposition.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                db.commit()
                db.refresh(record)
                logger.info("Record %s inserted for request %s", record.id, request_id)
                return record.id
        except IntegrityError as e:
            # A concurrent submit for the same request won the insert
            logger.warning("Duplicate submission for request %s: %s", request_id, e.orig)
            with self.session_factory() as db:
                existing = db.execute(
                    select(VerificationRecord.id).where(VerificationRecord.kyc_request_id == request_id)
                ).scalar_one_or_none()
            if existing is None:
                raise PersistenceError("Failed to save record") from e
            return existing
        except SQLAlchemyError as e:
            logger.error("Insert error for request %s: %s", request_id, e)
            raise PersistenceError(f"Failed to save record: {e}") from e

    def overview(self) -> RequestOverview:
        """All requests, newest first, with their records and status counts"""
        with self.session_factory() as db:
            requests = db.execute(
                select(KycRequest)
                .options(selectinload(KycRequest.record))
                .order_by(KycRequest.created_at.desc(), KycRequest.id.desc())
            ).scalars().all()
            items = [KycRequestRead.model_validate(r) for r in requests]

        stats = {"total": len(items)}
        for status in TokenStatus:
            stats[status.value] = sum(1 for r in items if r.status == status.value)
        return RequestOverview(requests=items, stats=stats)
