from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pythonjsonlogger.json import JsonFormatter

import asyncio
import logging
from typing import Optional

from config import settings
from verification.database import SessionLocal, init_db
from verification.errors import InvalidInput, VerificationError
from verification.fields import FieldReport
from verification.ocr import OcrAdapter
from verification.preprocess import derive_ocr_copy
from verification.schemas import (
    GenerateLinkPayload,
    GenerateLinkResponse,
    OcrRequest,
    RequestOverview,
    SubmissionPayload,
    SubmissionReceipt,
    UploadResponse,
)
from verification.service import VerificationService
from verification.storage import ArtifactStorage
from verification.tokens import TokenGuard
from verification.utils import decode_base64_image, download_image_from_url


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


configure_logging()
logger = logging.getLogger(__name__)

init_db()
guard = TokenGuard(SessionLocal)
storage = ArtifactStorage()
service = VerificationService(SessionLocal, guard, storage)
_ocr_adapter: Optional[OcrAdapter] = None


def get_ocr_adapter() -> OcrAdapter:
    # Built on first use so the vision backend only needs credentials when selected
    global _ocr_adapter
    if _ocr_adapter is None:
        _ocr_adapter = OcrAdapter()
    return _ocr_adapter


app = FastAPI(
    title="KYC Intake Service",
    description="Token-gated identity document intake with OCR-assisted field extraction",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/files", StaticFiles(directory=storage.root), name="files")


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# ------------------------
# Operator API
# ------------------------
@app.post("/admin/generate-link", response_model=GenerateLinkResponse)
def generate_link(payload: GenerateLinkPayload):
    """Issue a single-use verification link valid for TOKEN_TTL_DAYS."""
    issued = guard.issue(payload.first_name, payload.last_name, payload.email)
    return GenerateLinkResponse(
        token=issued.token,
        link=issued.link,
        kyc_request_id=issued.kyc_request_id,
        expires_at=issued.expires_at,
    )


@app.get("/admin/requests", response_model=RequestOverview)
def list_requests():
    return service.overview()


# ------------------------
# Submitter API
# ------------------------
@app.get("/kyc/validate-token")
def validate_token(token: Optional[str] = None):
    identity = guard.validate(token or "")
    return identity.to_dict()


@app.post("/kyc/upload", response_model=UploadResponse)
async def upload_artifact(
    file: Optional[UploadFile] = File(None),
    token: Optional[str] = Form(None),
    fileType: Optional[str] = Form(None),
):
    """Store one captured document side or the selfie for an active request."""
    if file is None or not token or not fileType:
        raise InvalidInput("Missing required fields")

    content = await file.read()
    logger.info("Upload received: %s, %d bytes", fileType, len(content))
    stored = await asyncio.to_thread(
        service.upload, token, fileType, content, file.filename, file.content_type
    )
    return UploadResponse(url=stored.url, path=stored.path)


@app.post("/kyc/ocr", response_model=FieldReport)
async def read_document(payload: OcrRequest):
    """
    Server-side recognition of a document image.
    Accepts base64 content or a URL the service fetches itself.
    """
    if payload.image_base64:
        image = decode_base64_image(payload.image_base64)
    elif payload.image_url:
        image = await asyncio.to_thread(download_image_from_url, payload.image_url)
    else:
        raise InvalidInput("No image provided")

    ocr_copy = await asyncio.to_thread(derive_ocr_copy, image)
    return await get_ocr_adapter().read_fields(ocr_copy.content, payload.document_type)


@app.post("/kyc/submit", response_model=SubmissionReceipt)
def submit_verification(payload: SubmissionPayload):
    return service.submit(payload)


# ------------------------
# Health Check
# ------------------------
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "kyc-intake"
    }


# ------------------------
# Local Dev Entry
# ------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
