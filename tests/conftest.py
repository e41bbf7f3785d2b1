import io
import os
import tempfile

import pytest

# Configure test database and storage before importing the app
_tmp = tempfile.mkdtemp(prefix="kyc-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp, 'kyc_test.db')}"
os.environ["STORAGE_DIR"] = os.path.join(_tmp, "files")
os.environ["OCR_BACKEND"] = "tesseract"

from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import select

import app as app_module
from verification.database import SessionLocal, engine
from verification.models import Base, KycRequest, VerificationRecord
from verification.ocr import OcrAdapter, RecognitionEngine, RecognitionResult, progress_event
from verification.tokens import TokenGuard


SAMPLE_ID_TEXT = """REPUBLIC OF EXAMPLE
NATIONAL IDENTITY CARD
JANE DOE
Date of Birth: 15/03/1990
Document No: AB1234567"""


class ScriptedEngine(RecognitionEngine):
    """Recognition engine returning canned text, recording what it was given"""

    name = "scripted"

    def __init__(self, text=SAMPLE_ID_TEXT, confidence=88.0, error=None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.calls = []

    def recognize(self, image, document_type, progress=None):
        self.calls.append((image, document_type))
        if self.error is not None:
            raise self.error
        if progress is not None:
            progress(progress_event("recognizing text", 0.5))
        return RecognitionResult(ok=True, text=self.text, confidence=self.confidence, engine=self.name)


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def guard():
    return TokenGuard(SessionLocal)


@pytest.fixture
def issued(guard):
    return guard.issue("Jane", "Doe", "jane@example.com")


@pytest.fixture
def scripted_engine():
    return ScriptedEngine()


@pytest.fixture
def ocr_adapter(scripted_engine):
    return OcrAdapter(scripted_engine)


@pytest.fixture
def make_image():
    def _make(width=640, height=400, fmt="JPEG", color=(180, 60, 40)):
        out = io.BytesIO()
        Image.new("RGB", (width, height), color).save(out, fmt)
        return out.getvalue()

    return _make


def read_status(token):
    with SessionLocal() as db:
        return db.execute(select(KycRequest.status).where(KycRequest.token == token)).scalar_one_or_none()


def read_record(request_id):
    with SessionLocal() as db:
        return db.execute(
            select(VerificationRecord).where(VerificationRecord.kyc_request_id == request_id)
        ).scalar_one_or_none()


@pytest.fixture
def status_of():
    return read_status


@pytest.fixture
def record_of():
    return read_record
