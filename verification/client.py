import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from config import settings
from .errors import (
    CaptureError,
    InvalidInput,
    PersistenceError,
    TokenAlreadyCompleted,
    TokenExpired,
    TokenNotFound,
)
from .schemas import SubmissionPayload, SubmissionReceipt

logger = logging.getLogger(__name__)

ERRORS_BY_STATUS = {
    400: InvalidInput,
    404: TokenNotFound,
    409: TokenAlreadyCompleted,
    410: TokenExpired,
    422: CaptureError,
}


class KycGateway(ABC):
    """What a verification session needs from the service."""

    @abstractmethod
    async def validate_token(self, token: str) -> Dict[str, object]:
        raise NotImplementedError

    @abstractmethod
    async def upload(
        self,
        token: str,
        role: str,
        content: bytes,
        filename: str = "capture.jpg",
        content_type: str = "image/jpeg",
    ) -> str:
        """Store an artifact and return its public URL"""
        raise NotImplementedError

    @abstractmethod
    async def submit(self, payload: SubmissionPayload) -> SubmissionReceipt:
        raise NotImplementedError


class HttpGateway(KycGateway):
    """KycGateway over the service's JSON API."""

    def __init__(
        self,
        base_url: str = settings.APP_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.HTTP_TIMEOUT,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            message = response.json().get("error") or response.reason_phrase
        except ValueError:
            message = response.text or response.reason_phrase
        # Anything unmapped is a server-side failure the user can retry
        error_cls = ERRORS_BY_STATUS.get(response.status_code, PersistenceError)
        raise error_cls(message)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise PersistenceError(f"Network error, please try again ({e})") from e
        self._raise_for_error(response)
        return response

    async def validate_token(self, token: str) -> Dict[str, object]:
        response = await self._request("GET", "/kyc/validate-token", params={"token": token})
        return response.json()

    async def upload(
        self,
        token: str,
        role: str,
        content: bytes,
        filename: str = "capture.jpg",
        content_type: str = "image/jpeg",
    ) -> str:
        response = await self._request(
            "POST",
            "/kyc/upload",
            data={"token": token, "fileType": role},
            files={"file": (filename, content, content_type)},
        )
        return response.json()["url"]

    async def submit(self, payload: SubmissionPayload) -> SubmissionReceipt:
        response = await self._request("POST", "/kyc/submit", json=payload.model_dump(mode="json"))
        return SubmissionReceipt.model_validate(response.json())
