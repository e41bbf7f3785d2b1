import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from .errors import InvalidInput, PersistenceError, TokenAlreadyCompleted, TokenExpired, TokenNotFound
from .models import KycRequest, TokenStatus, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TokenStatus.PENDING.value, TokenStatus.IN_PROGRESS.value)

# Status only moves forward, so a lost compare-and-swap settles within a few rounds
MAX_CAS_ATTEMPTS = 4


@dataclass(frozen=True)
class IssuedToken:
    token: str
    link: str
    kyc_request_id: int
    expires_at: datetime


@dataclass(frozen=True)
class TokenIdentity:
    id: int
    first_name: str
    last_name: str
    email: str
    status: str
    # True only for the call that moved the token from pending to in_progress
    activated: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "status": self.status,
        }


def mask_token(token: str) -> str:
    """Only the first 8 characters of a token ever reach the logs"""
    return f"{token[:8]}..." if token else "<empty>"


class TokenGuard:
    """
    Owns the token record lifecycle: issuance, single activation,
    expiry and completion.

    Every status change is a compare-and-swap on the observed status, so
    concurrent callers for the same token serialize on the database row.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_days: int = settings.TOKEN_TTL_DAYS,
        token_bytes: int = settings.TOKEN_BYTES,
        app_url: str = settings.APP_URL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(days=ttl_days)
        self.token_bytes = token_bytes
        self.app_url = app_url.rstrip("/")
        self.clock = clock

    def verification_link(self, token: str) -> str:
        return f"{self.app_url}/kyc/verify?token={token}"

    def issue(self, first_name: str, last_name: str, email: str) -> IssuedToken:
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        email = (email or "").strip().lower()
        if not first_name or not last_name or not email:
            raise InvalidInput("All fields are required")

        token = secrets.token_hex(self.token_bytes)
        now = self.clock()
        request = KycRequest(
            token=token,
            first_name=first_name,
            last_name=last_name,
            email=email,
            status=TokenStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )

        try:
            with self.session_factory() as db:
                db.add(request)
                db.commit()
                db.refresh(request)
        except SQLAlchemyError as e:
            logger.error("Failed to create KYC request: %s", e)
            raise PersistenceError("Failed to create KYC request") from e

        logger.info("Issued token %s for request %s", mask_token(token), request.id)
        return IssuedToken(
            token=token,
            link=self.verification_link(token),
            kyc_request_id=request.id,
            expires_at=request.expires_at,
        )

    def _find(self, db: Session, token: str) -> KycRequest:
        request = db.execute(select(KycRequest).where(KycRequest.token == token)).scalar_one_or_none()
        if request is None:
            raise TokenNotFound()
        return request

    def _compare_and_set(self, db: Session, request_id: int, observed: str, new_status: str) -> bool:
        result = db.execute(
            update(KycRequest)
            .where(KycRequest.id == request_id, KycRequest.status == observed)
            .values(status=new_status, updated_at=self.clock())
        )
        db.commit()
        return result.rowcount == 1

    def _check(self, db: Session, token: str, activate: bool) -> TokenIdentity:
        for _ in range(MAX_CAS_ATTEMPTS):
            request = self._find(db, token)
            status = request.status

            if request.expires_at < self.clock():
                if status in ACTIVE_STATUSES and not self._compare_and_set(
                    db, request.id, status, TokenStatus.EXPIRED.value
                ):
                    db.expire_all()
                    continue
                # A completed token keeps its status but still reports the expiry
                logger.info("Token %s has expired", mask_token(token))
                raise TokenExpired()

            if status == TokenStatus.COMPLETED.value:
                raise TokenAlreadyCompleted()
            if status == TokenStatus.EXPIRED.value:
                raise TokenExpired()

            activated = False
            if status == TokenStatus.PENDING.value and activate:
                if not self._compare_and_set(db, request.id, status, TokenStatus.IN_PROGRESS.value):
                    # Another caller moved the token first; decide again on what it wrote
                    db.expire_all()
                    continue
                status = TokenStatus.IN_PROGRESS.value
                activated = True
                logger.info("Token %s activated for request %s", mask_token(token), request.id)

            return TokenIdentity(
                id=request.id,
                first_name=request.first_name,
                last_name=request.last_name,
                email=request.email,
                status=status,
                activated=activated,
            )

        raise PersistenceError("Token status changed concurrently, please retry")

    def validate(self, token: str) -> TokenIdentity:
        """
        Validate a token at session start, activating it on first use

        Raises:
            TokenNotFound, TokenExpired, TokenAlreadyCompleted
        """
        if not token:
            raise InvalidInput("Token is required")
        with self.session_factory() as db:
            return self._check(db, token, activate=True)

    def require_active(self, token: str) -> TokenIdentity:
        """Same checks as validate, without activating. Used by upload and submit."""
        if not token:
            raise InvalidInput("Missing token")
        with self.session_factory() as db:
            return self._check(db, token, activate=False)

    def finalize(self, request_id: int) -> bool:
        """
        Mark a request completed once its artifact set is stored.
        Returns False when the status could not be flipped; callers treat
        that as non-fatal since the submission already exists.
        """
        try:
            with self.session_factory() as db:
                result = db.execute(
                    update(KycRequest)
                    .where(KycRequest.id == request_id, KycRequest.status.in_(ACTIVE_STATUSES))
                    .values(status=TokenStatus.COMPLETED.value, updated_at=self.clock())
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error("Status update to completed failed for request %s (non-fatal): %s", request_id, e)
            return False

        if result.rowcount != 1:
            logger.warning("Request %s was not active, status left unchanged", request_id)
            return False

        logger.info("Request %s marked completed", request_id)
        return True

